# watcher.py
# Polls Helix for which known channels are live and feeds the session state
# machine, so a missed stream.online/offline webhook is caught up within one
# poll interval.

import asyncio
import logging

import twitchio
from twitchio.ext import routines

from constants import HELIX_BATCH_SIZE, POLL_INTERVAL_SECONDS

log = logging.getLogger(__name__)


def _batches(items: list, size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


class LiveStatusWatcher:

    def __init__(self, session, registry, client, seconds: float = POLL_INTERVAL_SECONDS):
        self.session  = session
        self.registry = registry
        self.client   = client
        self.seconds  = seconds
        self._routine = None

    @classmethod
    def from_credentials(cls, session, registry, client_id: str, client_secret: str):
        client = twitchio.Client.from_client_credentials(client_id, client_secret)
        return cls(session, registry, client)

    # ─────────────────────────  ONE POLL  ────────────────────────────────────
    async def fetch_live(self, channel_ids: list[str]) -> dict:
        """``{channel_id: started_at}`` for every channel currently live."""
        live = {}
        for batch in _batches(channel_ids, HELIX_BATCH_SIZE):
            streams = await self.client.fetch_streams(user_ids=[int(c) for c in batch])
            for s in streams:
                live[str(s.user.id)] = s.started_at
        return live

    async def poll_once(self) -> None:
        with self.registry.lock:
            channel_ids = [c for c in self.registry.channels if c.isdigit()]
        if not channel_ids:
            return

        try:
            live = await self.fetch_live(channel_ids)
        except Exception:
            log.exception("[watcher] stream lookup failed, skipping this poll")
            return

        for channel_id in channel_ids:
            try:
                if channel_id in live:
                    await asyncio.to_thread(self.session.stream_online,
                                            channel_id, live[channel_id], from_poll=True)
                elif self.session.state(channel_id) is not None:
                    log.info("[watcher] %s no longer live, missed offline webhook?", channel_id)
                    await asyncio.to_thread(self.session.stream_offline, channel_id)
            except Exception:
                log.exception("[watcher] applying live status for %s failed", channel_id)

    # ─────────────────────────  LIFECYCLE  ───────────────────────────────────
    def start(self) -> None:
        @routines.routine(seconds=self.seconds)
        async def poll():
            await self.poll_once()

        self._routine = poll
        poll.start()
        log.info("[watcher] polling live status every %ss", self.seconds)

    async def close(self) -> None:
        if self._routine is not None:
            self._routine.cancel()
            self._routine = None
        close = getattr(self.client, "close", None)
        if close is not None:
            await close()
