# ==============================
# Isolated Worker Channel
# ==============================
"""
Typed request/response channel for running one structured agent call outside
the scheduler thread.

Two transports share the same request/reply contracts, correlate(...) helper and
EscalationPolicy:
- WorkerChannel: a separate OS process (multiprocessing Pipe). Crashes are
  contained, and a stuck call is force-killed.
- InProcessChannel: a thread pool. Cheaper, but a stuck call can only be abandoned.

Failure modes (process transport):
- pre-aborted token        -> WorkerAborted, nothing spawned
- no reply before deadline -> kill once, WorkerTimeoutError
- exit before reply        -> WorkerExitedError (exit code + buffered stdout/stderr)
- channel failure          -> WorkerChannelError
- token aborted mid-call   -> kill once, WorkerAborted(reason)
- reply ok=False           -> WorkerCallError
Replies whose request_id does not match are ignored.
"""

from __future__ import annotations

import logging
import multiprocessing
import os
import sys
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass
from multiprocessing.connection import Connection
from multiprocessing.connection import wait as wait_connections
from typing import Any, Dict, Optional

from pydantic import ValidationError

from runledger.agents.registry import AgentRegistry
from runledger.agents.resilience import ResilientCaller
from runledger.agents.validation import resolve_model
from runledger.config.schema import Settings, WorkerConfig
from runledger.contracts.worker_schema import (
    UNKNOWN_REQUEST_ID,
    WorkerReply,
    WorkerRequest,
    correlate,
)
from runledger.errors import (
    WorkerAborted,
    WorkerCallError,
    WorkerChannelError,
    WorkerExitedError,
    WorkerTimeoutError,
)
from runledger.orchestrator.cancellation import CancelToken

logger = logging.getLogger("runledger.worker")

WORKER_FAILURE_MESSAGE = "Worker execution failed."
INVALID_REQUEST_MESSAGE = "Invalid worker request payload."


# ==============================
# Escalation Policy
# ==============================
@dataclass(frozen=True)
class EscalationPolicy:
    """
    One timeout/cancel policy for every transport.

    deadline = max(min_deadline_ms, timeout_ms + kill_grace_ms)
    The wait loop wakes every poll_interval_ms to observe cancellation.
    """
    timeout_ms: int
    kill_grace_ms: int
    min_deadline_ms: int
    poll_interval_ms: int

    @classmethod
    def from_config(cls, cfg: WorkerConfig, *, timeout_ms: Optional[int] = None) -> "EscalationPolicy":
        return cls(
            timeout_ms=int(timeout_ms if timeout_ms is not None else cfg.timeout_ms),
            kill_grace_ms=max(0, int(cfg.kill_grace_ms)),
            min_deadline_ms=max(0, int(cfg.min_deadline_ms)),
            poll_interval_ms=max(1, int(cfg.poll_interval_ms)),
        )

    @property
    def deadline_ms(self) -> int:
        return max(self.min_deadline_ms, self.timeout_ms + self.kill_grace_ms)

    def deadline_at(self) -> float:
        return time.monotonic() + self.deadline_ms / 1000.0

    def next_wait(self, deadline_at: float) -> float:
        return max(0.0, min(deadline_at - time.monotonic(), self.poll_interval_ms / 1000.0))

    def timeout_message(self, request: WorkerRequest) -> str:
        return f"Worker timeout for {request.step}:{request.agent_key} after {self.deadline_ms}ms"


# ==============================
# Request Execution (shared by both transports)
# ==============================
def execute_request(request: WorkerRequest, settings: Settings) -> WorkerReply:
    """Run one request through ResilientCaller; failures become ok=False replies."""
    try:
        agent = AgentRegistry.resolve(request.agent_key)
        caller = ResilientCaller(settings)
        if request.output_model:
            model = resolve_model(request.output_model)
            result = caller.call(
                agent,
                request.prompt,
                model,
                max_turns=request.max_turns,
                run_id=request.run_id,
                step=request.step,
            )
            output: Any = result.model_dump(mode="json")
        else:
            output = agent.run(request.prompt, max_turns=request.max_turns).output_text
    except Exception as exc:
        logger.exception(
            "worker request failed",
            extra={"run_id": request.run_id, "step": request.step, "request_id": request.request_id},
        )
        return WorkerReply(
            request_id=request.request_id,
            ok=False,
            error=WORKER_FAILURE_MESSAGE,
            details=f"{exc.__class__.__name__}: {exc}",
        )
    return WorkerReply(request_id=request.request_id, ok=True, output=output)


def worker_main(conn: Connection, output_fd: int, settings_payload: Dict[str, Any]) -> None:
    """
    Entry point of the worker process: read one request, reply once, exit 0/1.
    stdout/stderr are redirected into the parent's diagnostics pipe.
    """
    sys.stdout.flush()
    sys.stderr.flush()
    os.dup2(output_fd, 1)
    os.dup2(output_fd, 2)
    os.close(output_fd)

    exit_code = 1
    try:
        raw = conn.recv()
        try:
            request = WorkerRequest.model_validate(raw)
        except ValidationError as exc:
            rid = raw.get("request_id") if isinstance(raw, dict) and isinstance(raw.get("request_id"), str) else None
            conn.send(
                WorkerReply(
                    request_id=rid or UNKNOWN_REQUEST_ID,
                    ok=False,
                    error=INVALID_REQUEST_MESSAGE,
                    details=str(exc),
                ).model_dump(mode="json")
            )
            return
        settings = Settings.model_validate(settings_payload)
        reply = execute_request(request, settings)
        conn.send(reply.model_dump(mode="json"))
        exit_code = 0 if reply.ok else 1
    finally:
        sys.stdout.flush()
        sys.stderr.flush()
        conn.close()
        if exit_code:
            sys.exit(exit_code)


# ==============================
# Output Capture
# ==============================
class _OutputBuffer:
    """Drains a pipe fd on a daemon thread, keeping the last max_bytes."""

    def __init__(self, fd: int, *, max_bytes: int) -> None:
        self.fd = fd
        self.max_bytes = max_bytes
        self._chunks = bytearray()
        self._lock = threading.Lock()
        self._thread = threading.Thread(target=self._drain, name=f"worker-output-{fd}", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def _drain(self) -> None:
        try:
            while True:
                chunk = os.read(self.fd, 4096)
                if not chunk:
                    break
                with self._lock:
                    self._chunks.extend(chunk)
                    if len(self._chunks) > self.max_bytes:
                        del self._chunks[: len(self._chunks) - self.max_bytes]
        finally:
            os.close(self.fd)

    def text(self, *, wait: float = 0.2) -> str:
        self._thread.join(wait)
        with self._lock:
            return self._chunks.decode("utf-8", errors="replace").strip()


# ==============================
# Process Transport
# ==============================
class WorkerChannel:
    def __init__(self, settings: Settings, *, start_method: Optional[str] = None) -> None:
        self.settings = settings
        self.mp = multiprocessing.get_context(start_method or settings.worker.start_method)

    def policy_for(self, request: WorkerRequest) -> EscalationPolicy:
        return EscalationPolicy.from_config(self.settings.worker, timeout_ms=request.timeout_ms)

    def call(self, request: WorkerRequest, token: Optional[CancelToken] = None) -> Any:
        if token is not None and token.aborted:
            raise WorkerAborted(token.reason or "Cancelled")

        policy = self.policy_for(request)
        parent_conn, child_conn = self.mp.Pipe(duplex=True)
        out_r, out_w = os.pipe()
        process = self.mp.Process(
            target=worker_main,
            args=(child_conn, out_w, self.settings.model_dump(mode="json")),
            name=f"worker-{request.step}-{request.agent_key}",
            daemon=True,
        )
        process.start()
        child_conn.close()
        os.close(out_w)
        output = _OutputBuffer(out_r, max_bytes=self.settings.worker.max_output_bytes)
        output.start()
        extra = {"run_id": request.run_id, "step": request.step, "request_id": request.request_id}
        logger.info("worker spawned pid=%s", process.pid, extra=extra)

        killed = False
        try:
            try:
                parent_conn.send(request.model_dump(mode="json"))
            except (OSError, ValueError) as exc:
                raise WorkerChannelError(f"Failed to send worker request: {exc}") from exc

            deadline = policy.deadline_at()
            matches = correlate(request.request_id)
            while True:
                if token is not None and token.aborted:
                    killed = self._force_terminate(process)
                    raise WorkerAborted(token.reason or "Cancelled")
                if time.monotonic() >= deadline:
                    killed = self._force_terminate(process)
                    raise WorkerTimeoutError(policy.timeout_message(request))

                ready = wait_connections([parent_conn, process.sentinel], timeout=policy.next_wait(deadline))
                if parent_conn in ready:
                    try:
                        message = parent_conn.recv()
                    except EOFError:
                        process.join(1.0)
                        raise WorkerExitedError(
                            self._exit_message(request, process, output.text()),
                            exitcode=process.exitcode,
                        )
                    except OSError as exc:
                        raise WorkerChannelError(f"Worker channel error: {exc}") from exc
                    if not matches(message):
                        logger.warning("ignoring reply for another request", extra=extra)
                        continue
                    try:
                        reply = WorkerReply.model_validate(message)
                    except ValidationError as exc:
                        raise WorkerChannelError(f"Malformed worker reply: {exc}") from exc
                    if reply.ok:
                        return reply.output
                    raise WorkerCallError(
                        "\n".join(p for p in (reply.error, reply.details, output.text()) if p)
                    )
                if process.sentinel in ready and not parent_conn.poll(0):
                    process.join(1.0)
                    raise WorkerExitedError(
                        self._exit_message(request, process, output.text()),
                        exitcode=process.exitcode,
                    )
        finally:
            parent_conn.close()
            if not killed:
                process.join(1.0)
                if process.is_alive():
                    self._force_terminate(process)
            process.join(1.0)

    def _force_terminate(self, process: Any) -> bool:
        if process.is_alive():
            logger.warning("force-terminating worker pid=%s", process.pid)
            process.kill()
        return True

    def _exit_message(self, request: WorkerRequest, process: Any, output: str) -> str:
        code = process.exitcode
        signal = -code if code is not None and code < 0 else None
        head = (
            f"Worker exited before response for {request.step}:{request.agent_key} "
            f"(code={code if signal is None else None} signal={signal})"
        )
        return f"{head}\n{output}" if output else head


# ==============================
# Thread Transport
# ==============================
class InProcessChannel:
    """Same contract as WorkerChannel, executed on a thread pool."""

    def __init__(self, settings: Settings, *, max_workers: Optional[int] = None) -> None:
        self.settings = settings
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers or max(1, settings.scheduler.concurrency),
            thread_name_prefix="agent-call",
        )

    def policy_for(self, request: WorkerRequest) -> EscalationPolicy:
        return EscalationPolicy.from_config(self.settings.worker, timeout_ms=request.timeout_ms)

    def call(self, request: WorkerRequest, token: Optional[CancelToken] = None) -> Any:
        if token is not None and token.aborted:
            raise WorkerAborted(token.reason or "Cancelled")
        policy = self.policy_for(request)
        future = self._pool.submit(execute_request, request, self.settings)
        deadline = policy.deadline_at()
        matches = correlate(request.request_id)
        while True:
            if token is not None and token.aborted:
                self._abandon(future)
                raise WorkerAborted(token.reason or "Cancelled")
            if time.monotonic() >= deadline:
                self._abandon(future)
                raise WorkerTimeoutError(policy.timeout_message(request))
            done, _ = wait_futures([future], timeout=policy.next_wait(deadline))
            if not done:
                continue
            reply = future.result()
            if not matches(reply):
                raise WorkerChannelError(f"Reply does not match request {request.request_id}")
            if reply.ok:
                return reply.output
            raise WorkerCallError("\n".join(p for p in (reply.error, reply.details) if p))

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    def _abandon(self, future: Future) -> None:
        if not future.cancel():
            logger.warning("agent call still running on a pool thread; result will be discarded")
