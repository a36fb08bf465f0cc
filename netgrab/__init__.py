"""
NetGrab - pluggable banner grabber
"""

__version__ = "1.0.0"
