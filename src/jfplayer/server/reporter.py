"""Progress reporting to Emby/Jellyfin.

Tells the media server when external playback starts and stops (and where
it got to) through the session API, so watched state and resume points stay
correct even though the browser never played the file itself.

Reports are handed to a single worker thread. They go out in the order they
were made and never hold up the caller; failures are logged and dropped.
"""

from __future__ import annotations

import logging
import queue
import threading

import httpx

from jfplayer.server.session import Credentials, ReportContext

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0
TICKS_PER_SECOND = 10_000_000
PLAY_METHOD = "DirectPlay"


def seconds_to_ticks(seconds: float) -> int:
    return int(seconds * TICKS_PER_SECOND)


def ticks_to_seconds(ticks) -> float:
    try:
        return float(ticks) / TICKS_PER_SECOND
    except (TypeError, ValueError):
        return 0.0


class MediaServerClient:
    """Thin httpx wrapper for the handful of session endpoints we use."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, transport: httpx.BaseTransport | None = None):
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def close(self):
        self._client.close()

    @staticmethod
    def _headers(credentials: Credentials) -> dict:
        return {"X-Emby-Token": credentials.token}

    @staticmethod
    def _url(credentials: Credentials, path: str) -> str:
        return credentials.server_url.rstrip("/") + path

    def post(self, credentials: Credentials, path: str, payload: dict):
        """POST a JSON payload; raises httpx errors (incl. non-2xx)."""
        resp = self._client.post(
            self._url(credentials, path),
            json=payload,
            headers=self._headers(credentials),
        )
        resp.raise_for_status()

    def get_item(self, credentials: Credentials, item_id: str) -> dict:
        resp = self._client.get(
            self._url(credentials, f"/Users/{credentials.user_id}/Items/{item_id}"),
            headers=self._headers(credentials),
        )
        resp.raise_for_status()
        return resp.json()


class ProgressReporter:
    """Fire-and-forget start/progress/stop reports.

    Usage:
        reporter = ProgressReporter()
        reporter.report_start(ctx)
        ...
        reporter.report_stop(ctx)

    Contexts without any credentials (no media-server integration) are
    skipped silently.
    """

    def __init__(self, client: MediaServerClient | None = None):
        self._client = client or MediaServerClient()
        self._queue: queue.Queue = queue.Queue()
        self._thread: threading.Thread | None = None
        self._start_lock = threading.Lock()

    def _ensure_worker(self):
        with self._start_lock:
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(
                    target=self._worker, daemon=True, name="progress-reporter",
                )
                self._thread.start()

    def _worker(self):
        while True:
            kind, path, ctx, payload = self._queue.get()
            try:
                self._client.post(ctx.credentials, path, payload)
                logger.info("Reported playback %s for item %s (%.0fs)",
                            kind, ctx.item_id, ctx.position)
            except httpx.HTTPStatusError as e:
                logger.warning("Playback %s report for %s rejected: HTTP %d",
                               kind, ctx.item_id, e.response.status_code)
            except httpx.HTTPError as e:
                logger.warning("Playback %s report for %s failed: %s", kind, ctx.item_id, e)
            except Exception:
                logger.exception("Unexpected error reporting playback %s", kind)
            finally:
                self._queue.task_done()

    def _submit(self, kind: str, path: str, ctx: ReportContext, payload: dict):
        if not ctx.credentials.configured:
            return
        if not ctx.item_id:
            logger.debug("No item id, skipping %s report", kind)
            return
        self._ensure_worker()
        self._queue.put((kind, path, ctx, payload))

    def flush(self):
        """Block until every queued report has been sent (or failed)."""
        self._queue.join()

    def report_start(self, ctx: ReportContext):
        self._submit("start", "/Sessions/Playing", ctx, {
            "ItemId": ctx.item_id,
            "PlaySessionId": ctx.play_session_id,
            "PositionTicks": seconds_to_ticks(ctx.position),
            "CanSeek": True,
            "IsPaused": False,
            "PlayMethod": PLAY_METHOD,
        })

    def report_progress(self, ctx: ReportContext):
        self._submit("progress", "/Sessions/Playing/Progress", ctx, {
            "ItemId": ctx.item_id,
            "PlaySessionId": ctx.play_session_id,
            "PositionTicks": seconds_to_ticks(ctx.position),
            "IsPaused": ctx.paused,
            "CanSeek": True,
            "PlayMethod": PLAY_METHOD,
        })

    def report_stop(self, ctx: ReportContext):
        self._submit("stop", "/Sessions/Playing/Stopped", ctx, {
            "ItemId": ctx.item_id,
            "PlaySessionId": ctx.play_session_id,
            "PositionTicks": seconds_to_ticks(ctx.position),
        })

    def fetch_resume_position(self, credentials: Credentials, item_id: str) -> float:
        """Stored resume position for an item in seconds (0 if none/unknown).

        Runs synchronously since the result decides the player's start
        offset; bounded by the client timeout.
        """
        if not (credentials.server_url and credentials.user_id and item_id):
            return 0.0
        try:
            item = self._client.get_item(credentials, item_id)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Resume lookup for %s failed: %s", item_id, e)
            return 0.0
        if not isinstance(item, dict):
            return 0.0
        user_data = item.get("UserData") or {}
        seconds = ticks_to_seconds(user_data.get("PlaybackPositionTicks") or 0)
        if seconds > 0:
            logger.info("Resuming %s at %.0fs", item_id, seconds)
        return max(seconds, 0.0)
