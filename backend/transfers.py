"""
Background upload session.

Uploads run as asyncio tasks keyed by an integer task id. Each task id is
paired with a semantic reference in the task reference table, which is
written to disk whenever it changes so that a relaunched process can resume
the uploads it had in flight and still deliver their completions.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from errors import OrderProcessingError, ParsingError, TransportError
from repositories.task_reference_repository import TaskReferenceRepository

logger = logging.getLogger("photobook-orders")

CONTENT_TYPES = {".png": "image/png", ".jpg": "image/jpeg", ".jpeg": "image/jpeg"}


@dataclass
class TransferEvent:
    task_id: int
    reference: Optional[str]
    response: Dict[str, Any] = field(default_factory=dict)
    error: Optional[OrderProcessingError] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


CompletionHandler = Callable[[TransferEvent], Awaitable[None]]


def _content_type(path: Path) -> str:
    return CONTENT_TYPES.get(path.suffix.lower(), "application/octet-stream")


class BackgroundTransferSession:
    def __init__(
        self,
        upload_url: str,
        references: TaskReferenceRepository,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.upload_url = upload_url
        self._references = references
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._handler: Optional[CompletionHandler] = None
        self._tasks: Dict[int, asyncio.Task] = {}
        self._entries: Dict[int, Dict[str, Any]] = references.fetch_all()
        self._next_task_id = max(self._entries, default=0) + 1
        self._save_lock = asyncio.Lock()

    def set_completion_handler(self, handler: Optional[CompletionHandler]) -> None:
        self._handler = handler

    def pending_task_count(self) -> int:
        return len(self._tasks)

    def references(self) -> Dict[int, str]:
        return {task_id: entry["reference"] for task_id, entry in self._entries.items()}

    async def upload(self, file_path: Path, reference: str) -> int:
        task_id = self._next_task_id
        self._next_task_id += 1
        self._entries[task_id] = {"reference": reference, "file": str(file_path)}
        await self._persist()
        self._start(task_id, Path(file_path))
        logger.info("Upload task %s started for %s", task_id, reference)
        return task_id

    async def reattach(self) -> int:
        """Resume tasks recorded by a previous process. Returns how many resumed."""
        stored = await asyncio.to_thread(self._references.fetch_all)
        for task_id, entry in stored.items():
            self._entries.setdefault(task_id, entry)
        self._next_task_id = max(self._next_task_id, max(self._entries, default=0) + 1)

        resumed = 0
        for task_id, entry in list(self._entries.items()):
            if task_id in self._tasks:
                continue
            file_value = entry.get("file")
            if file_value and Path(file_value).exists():
                self._start(task_id, Path(file_value))
                resumed += 1
                continue
            self._entries.pop(task_id, None)
            await self._persist()
            await self._deliver(
                TransferEvent(
                    task_id=task_id,
                    reference=entry.get("reference"),
                    error=TransportError("Upload file is no longer available"),
                )
            )
        if resumed:
            logger.info("Reattached %s upload task(s)", resumed)
        return resumed

    async def cancel_all(self) -> None:
        current = asyncio.current_task()
        tasks = [task for task in self._tasks.values() if task is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._entries.clear()
        await self._persist()
        logger.info("Cancelled %s upload task(s)", len(tasks))

    def save_pending_tasks(self) -> None:
        self._references.save_all(dict(self._entries))

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._client

    def _start(self, task_id: int, path: Path) -> None:
        self._tasks[task_id] = asyncio.create_task(self._run(task_id, path))

    async def _persist(self) -> None:
        async with self._save_lock:
            snapshot = dict(self._entries)
            await asyncio.to_thread(self._references.save_all, snapshot)

    async def _run(self, task_id: int, path: Path) -> None:
        response: Dict[str, Any] = {}
        error: Optional[OrderProcessingError] = None
        try:
            response = await self._send(path)
        except OrderProcessingError as exc:
            error = exc
        except Exception as exc:
            logger.exception("Upload task %s crashed: %s", task_id, exc)
            error = TransportError(f"{type(exc).__name__}: {exc}")
        self._tasks.pop(task_id, None)
        entry = self._entries.pop(task_id, None)
        await self._persist()
        if error is None:
            with contextlib.suppress(OSError):
                await asyncio.to_thread(path.unlink)
        else:
            logger.warning("Upload task %s failed: %s", task_id, error)
        await self._deliver(
            TransferEvent(
                task_id=task_id,
                reference=entry.get("reference") if entry else None,
                response=response,
                error=error,
            )
        )

    async def _send(self, path: Path) -> Dict[str, Any]:
        try:
            content = await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise TransportError(f"Cannot read upload file {path.name}: {exc}") from exc
        files = {"file": (path.name, content, _content_type(path))}
        try:
            response = await self._get_client().post(
                self.upload_url, files=files, headers={"Accept": "application/json"}
            )
        except httpx.HTTPError as exc:
            raise TransportError(str(exc)) from exc
        if response.status_code >= 400:
            raise TransportError(
                f"Upload failed with status {response.status_code}",
                code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise ParsingError(f"Upload response is not JSON: {response.text[:200]}") from exc
        if not isinstance(data, dict):
            raise ParsingError("Upload response is not an object")
        return data

    async def _deliver(self, event: TransferEvent) -> None:
        if self._handler is None:
            logger.warning("Upload task %s finished with no handler registered", event.task_id)
            return
        try:
            await self._handler(event)
        except Exception as exc:  # pragma: no cover - background guard
            logger.exception("Upload completion handler failed: %s", exc)
