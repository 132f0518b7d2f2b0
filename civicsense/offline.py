"""Client-side submission queue for reporting without connectivity.

Reports made while offline are written to a JSON file (image included) and
replayed FIFO through a registered sync callback each time connectivity
returns. A replay that fails leaves the entry in place for the next
reconnect. Each entry's ``local_id`` travels with the submission as
``client_submission_id`` so the server can drop a replay it already stored.
"""

import asyncio
import base64
import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from .config import CLIENT_STATE_DIR, PORTAL_URL, new_id, now_utc
from .models import ImageData

logger = logging.getLogger(__name__)

SyncCallback = Callable[["OfflineQueueEntry"], Awaitable[bool]]


class QueuedSubmission(BaseModel):
    fields: Dict[str, Any] = Field(default_factory=dict)
    image_b64: str = ""
    image_mime_type: str = "image/jpeg"
    image_filename: str = "upload.jpg"

    @classmethod
    def build(cls, fields: Dict[str, Any], image: ImageData) -> "QueuedSubmission":
        return cls(fields=fields, image_b64=base64.b64encode(image.content).decode("ascii"),
                   image_mime_type=image.mime_type, image_filename=image.filename)

    def image(self) -> ImageData:
        return ImageData(content=base64.b64decode(self.image_b64), mime_type=self.image_mime_type,
                         filename=self.image_filename)


class OfflineQueueEntry(BaseModel):
    local_id: str = Field(default_factory=new_id)
    payload: QueuedSubmission
    queued_at: datetime = Field(default_factory=now_utc)
    sync_attempts: int = 0


class OfflineQueue:
    def __init__(self, path: Path):
        self.path = Path(path)
        self._callbacks: List[SyncCallback] = []
        self._replay_lock = asyncio.Lock()

    # -- storage ------------------------------------------------------------
    def _load(self) -> List[OfflineQueueEntry]:
        if not self.path.is_file():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error("Offline queue at %s is unreadable: %s", self.path, e)
            raise
        return [OfflineQueueEntry.model_validate(item) for item in raw]

    def _save(self, entries: List[OfflineQueueEntry]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps([e.model_dump(mode="json") for e in entries]), encoding="utf-8")
        os.replace(tmp, self.path)

    def entries(self) -> List[OfflineQueueEntry]:
        return self._load()

    def __len__(self) -> int:
        return len(self._load())

    def enqueue(self, payload: QueuedSubmission) -> OfflineQueueEntry:
        entries = self._load()
        entry = OfflineQueueEntry(payload=payload)
        entries.append(entry)
        self._save(entries)
        logger.info("Queued submission %s for later sync (%d pending)", entry.local_id, len(entries))
        return entry

    def remove(self, local_id: str):
        self._save([e for e in self._load() if e.local_id != local_id])

    def _record_attempt(self, local_id: str):
        entries = self._load()
        for e in entries:
            if e.local_id == local_id:
                e.sync_attempts += 1
        self._save(entries)

    # -- replay -------------------------------------------------------------
    def register_sync(self, callback: SyncCallback):
        self._callbacks.append(callback)

    async def handle_reconnect(self) -> Dict[str, int]:
        """Replay every queued entry once, oldest first.

        A reconnect that arrives while a replay is running is skipped; the
        running pass already covers every queued entry.
        """
        if self._replay_lock.locked():
            logger.info("Replay already running, skipping overlapping reconnect")
            return {"synced": 0, "failed": 0, "skipped": len(self)}
        async with self._replay_lock:
            synced = failed = 0
            for entry in self._load():
                ok = False
                for callback in self._callbacks:
                    try:
                        ok = await callback(entry)
                    except Exception as e:
                        logger.error("Sync of %s failed: %s", entry.local_id, e)
                        ok = False
                    if not ok:
                        break
                if ok and self._callbacks:
                    self.remove(entry.local_id)
                    synced += 1
                else:
                    self._record_attempt(entry.local_id)
                    failed += 1
            logger.info("Offline replay finished: %d synced, %d still queued", synced, failed)
            return {"synced": synced, "failed": failed, "skipped": 0}


def load_session_id(state_dir: Path = CLIENT_STATE_DIR) -> str:
    """Stable anonymous voter id, created on first use and kept across visits."""
    path = Path(state_dir) / "session_id"
    if path.is_file():
        value = path.read_text(encoding="utf-8").strip()
        if value:
            return value
    value = f"session_{new_id()}"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(value, encoding="utf-8")
    return value


class PortalClient:
    """Thin async client for the portal API with offline fallback for submissions."""

    def __init__(self, base_url: str = PORTAL_URL, token: Optional[str] = None,
                 queue: Optional[OfflineQueue] = None, state_dir: Path = CLIENT_STATE_DIR,
                 http: Optional[httpx.AsyncClient] = None,
                 is_online: Optional[Callable[[], Awaitable[bool]]] = None):
        self.http = http or httpx.AsyncClient(base_url=base_url, timeout=60)
        self.token = token
        self.state_dir = Path(state_dir)
        self.queue = queue or OfflineQueue(self.state_dir / "offline_queue.json")
        self._is_online = is_online or self._probe
        self.queue.register_sync(self._replay_entry)

    async def aclose(self):
        await self.http.aclose()

    @property
    def headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    async def _probe(self) -> bool:
        try:
            resp = await self.http.get("/health", timeout=5)
            return resp.status_code == 200
        except httpx.TransportError:
            return False

    async def _post_issue(self, payload: QueuedSubmission, client_submission_id: Optional[str]) -> httpx.Response:
        image = payload.image()
        data = {k: str(v).lower() if isinstance(v, bool) else str(v)
                for k, v in payload.fields.items() if v is not None}
        if client_submission_id:
            data["client_submission_id"] = client_submission_id
        files = {"image": (image.filename, image.content, image.mime_type)}
        return await self.http.post("/issues", data=data, files=files, headers=self.headers)

    async def submit_issue(self, fields: Dict[str, Any], image: ImageData) -> Dict[str, Any]:
        payload = QueuedSubmission.build(fields, image)
        if not await self._is_online():
            entry = self.queue.enqueue(payload)
            return {"queued": True, "local_id": entry.local_id}
        resp = await self._post_issue(payload, fields.get("client_submission_id"))
        resp.raise_for_status()
        return {"queued": False, **resp.json()}

    async def _replay_entry(self, entry: OfflineQueueEntry) -> bool:
        try:
            resp = await self._post_issue(entry.payload, entry.local_id)
        except httpx.TransportError as e:
            logger.warning("Replay of %s could not reach the portal: %s", entry.local_id, e)
            return False
        if resp.status_code >= 400:
            logger.warning("Replay of %s rejected with %d: %s", entry.local_id, resp.status_code, resp.text[:200])
            return False
        return True

    async def on_reconnect(self) -> Dict[str, int]:
        return await self.queue.handle_reconnect()

    async def toggle_upvote(self, issue_id: str) -> Dict[str, Any]:
        resp = await self.http.post("/upvotes/toggle", headers=self.headers, json={
            "issue_id": issue_id, "session_id": load_session_id(self.state_dir)})
        resp.raise_for_status()
        return resp.json()
