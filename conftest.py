"""
Shared fixtures: throwaway certificates and local asyncio servers
"""

import asyncio
import datetime
import socket
import ssl
from typing import Awaitable, Callable, NamedTuple

import pytest
import pytest_asyncio
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

Handler = Callable[[asyncio.StreamReader, asyncio.StreamWriter], Awaitable[None]]


class CertBundle(NamedTuple):
    ca_cert: x509.Certificate
    leaf_cert: x509.Certificate
    chain_file: str  # leaf then CA, PEM
    key_file: str


def _name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def _issue(subject: str, issuer: str, public_key, signing_key, serial: int, ca: bool) -> x509.Certificate:
    now = datetime.datetime.now(datetime.timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(_name(subject))
        .issuer_name(_name(issuer))
        .public_key(public_key)
        .serial_number(serial)
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .sign(signing_key, hashes.SHA256())
    )


@pytest.fixture(scope="session")
def certs(tmp_path_factory) -> CertBundle:
    """A CA and a localhost leaf it signed"""
    ca_key = ec.generate_private_key(ec.SECP256R1())
    ca_cert = _issue("NetGrab Test CA", "NetGrab Test CA", ca_key.public_key(), ca_key, 1000, True)
    leaf_key = ec.generate_private_key(ec.SECP256R1())
    leaf_cert = _issue("localhost", "NetGrab Test CA", leaf_key.public_key(), ca_key, 123456789012345678901234567890, False)

    directory = tmp_path_factory.mktemp("certs")
    chain_file = directory / "chain.pem"
    chain_file.write_bytes(
        leaf_cert.public_bytes(serialization.Encoding.PEM) + ca_cert.public_bytes(serialization.Encoding.PEM)
    )
    key_file = directory / "key.pem"
    key_file.write_bytes(leaf_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ))
    return CertBundle(ca_cert, leaf_cert, str(chain_file), str(key_file))


def server_context(bundle: CertBundle, max_version: ssl.TLSVersion = None) -> ssl.SSLContext:
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(bundle.chain_file, bundle.key_file)
    if max_version is not None:
        context.maximum_version = max_version
    return context


async def close_writer(writer: asyncio.StreamWriter):
    writer.close()
    try:
        await writer.wait_closed()
    except (OSError, ssl.SSLError):
        pass


@pytest.fixture
def closed_port() -> int:
    """A local port with nothing listening on it"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest_asyncio.fixture
async def serve():
    """Start local servers for a test; returns an async factory giving the port"""
    servers = []

    async def start(handler: Handler, ssl_context: ssl.SSLContext = None) -> int:
        server = await asyncio.start_server(handler, "127.0.0.1", 0, ssl=ssl_context)
        servers.append(server)
        return server.sockets[0].getsockname()[1]

    yield start

    for server in servers:
        server.close()
    for server in servers:
        await server.wait_closed()
