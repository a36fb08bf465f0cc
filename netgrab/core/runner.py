"""
Scan runner
Streams targets to a pool of asyncio workers and hands back one grab per
target as each scan completes
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from netgrab.core.module import Scanner
from netgrab.core.registry import ScanCommand
from netgrab.core.status import ScanStatus
from netgrab.core.target import IPAddress, ScanTarget

logger = logging.getLogger(__name__)


@dataclass
class ModuleResult:
    """What one module reported for one target"""
    status: ScanStatus
    protocol: str
    result: Any = None
    error: Optional[BaseException] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "status": self.status.value,
            "protocol": self.protocol,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.result is not None:
            out["result"] = self.result.to_dict() if hasattr(self.result, "to_dict") else self.result
        if self.error is not None:
            out["error"] = str(self.error) or type(self.error).__name__
        return out


@dataclass
class Grab:
    """All module results for one target"""
    ip: Optional[IPAddress] = None
    domain: str = ""
    port: Optional[int] = None
    data: Dict[str, ModuleResult] = field(default_factory=dict)

    @classmethod
    def for_target(cls, target: ScanTarget) -> "Grab":
        return cls(ip=target.ip, domain=target.domain, port=target.port)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.ip is not None:
            out["ip"] = str(self.ip)
        if self.domain:
            out["domain"] = self.domain
        if self.port is not None:
            out["port"] = self.port
        out["data"] = {name: result.to_dict() for name, result in self.data.items()}
        return out


class ScanRunner:
    """Runs one initialized scanner over a stream of targets"""

    def __init__(self, command: ScanCommand, scanner: Scanner, senders: int = 1000):
        if senders < 1:
            raise ValueError("senders must be at least 1")
        self.command = command
        self.scanner = scanner
        self.senders = senders
        self.scanned = 0
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None

    def wants(self, target: ScanTarget) -> bool:
        """A scanner with a trigger only runs on targets carrying that tag"""
        trigger = self.scanner.get_trigger()
        return not trigger or target.tag == trigger

    async def scan_target(self, target: ScanTarget) -> Grab:
        name = self.scanner.get_name() or self.command.name
        protocol = self.scanner.protocol()
        grab = Grab.for_target(target)
        try:
            status, result, error = await self.scanner.scan(target)
        except Exception as e:
            logger.exception(f"Unexpected error scanning {target} with {name}")
            grab.data[name] = ModuleResult(ScanStatus.UNKNOWN_ERROR, protocol, error=e)
            return grab

        logger.debug(f"{name} {target}: {status.value}")
        grab.data[name] = ModuleResult(status, protocol, result, error)
        return grab

    async def _worker(self, sender_id: int, queue: "asyncio.Queue[ScanTarget]",
                      emit: Callable[[Grab], None]) -> None:
        self.scanner.init_per_sender(sender_id)
        while True:
            target = await queue.get()
            try:
                emit(await self.scan_target(target))
            finally:
                queue.task_done()

    async def run(self, targets: Iterable[ScanTarget],
                  on_grab: Optional[Callable[[Grab], None]] = None) -> List[Grab]:
        """
        Scan every wanted target, pulling targets lazily.

        At most twice as many targets as senders wait in the queue, and
        workers start as targets arrive, up to senders of them. With
        on_grab every grab is handed over as soon as it completes and none
        are kept; without it grabs are returned in completion order. An
        error raised by on_grab stops the scan and propagates.
        """
        self.start_time = time.time()
        self.scanned = 0
        grabs: List[Grab] = []
        emit = on_grab if on_grab is not None else grabs.append
        logger.info(f"Starting {self.command.name} scan with up to {self.senders} senders")

        queue: "asyncio.Queue[ScanTarget]" = asyncio.Queue(maxsize=self.senders * 2)
        workers: List["asyncio.Task[None]"] = []
        main = asyncio.current_task()
        stopping = False

        def stop_on_failure(task: "asyncio.Task[None]") -> None:
            if not stopping and not task.cancelled() and task.exception() is not None:
                main.cancel()

        try:
            for target in targets:
                if not self.wants(target):
                    continue
                if len(workers) < self.senders:
                    worker = asyncio.ensure_future(self._worker(len(workers), queue, emit))
                    worker.add_done_callback(stop_on_failure)
                    workers.append(worker)
                await queue.put(target)
                self.scanned += 1
            await queue.join()
        except asyncio.CancelledError:
            if _worker_failure(workers) is None:
                raise
        finally:
            stopping = True
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

        failure = _worker_failure(workers)
        if failure is not None:
            raise failure

        self.end_time = time.time()
        logger.info(f"Scanned {self.scanned} targets in {self.end_time - self.start_time:.2f}s")
        return grabs


def _worker_failure(workers: List["asyncio.Task[None]"]) -> Optional[BaseException]:
    for worker in workers:
        if worker.done() and not worker.cancelled() and worker.exception() is not None:
            return worker.exception()
    return None
