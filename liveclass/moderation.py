from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, Optional

from liveclass_shared.protocol import CameraFacing, Origin, ParticipantStatus

from .callbacks import invoke

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LocalParticipantState:
    muted: bool = False
    video_enabled: bool = True
    hand_raised: bool = False
    camera_facing: CameraFacing = CameraFacing.FRONT
    status: ParticipantStatus = ParticipantStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "muted": self.muted,
            "video_enabled": self.video_enabled,
            "hand_raised": self.hand_raised,
            "camera_facing": self.camera_facing.value,
            "status": self.status.value,
        }


ChangeCallback = Callable[[LocalParticipantState], Awaitable[None] | None]


class ModerationReconciler:
    """Single writer of the local participant's mute, video, hand and camera state.

    User toggles and moderator commands both come through here. Changes to the
    same attribute are serialised so the last request wins and the media layer
    never sees interleaved operations. A request that matches the current value
    is a no-op and produces no announcement.
    """

    def __init__(
        self,
        media: Any,
        signaling: Any = None,
        *,
        initial: Optional[LocalParticipantState] = None,
        on_change: Optional[ChangeCallback] = None,
    ) -> None:
        self._media = media
        self._signaling = signaling
        self._state = initial or LocalParticipantState()
        self._on_change = on_change
        self._audio_lock = asyncio.Lock()
        self._video_lock = asyncio.Lock()
        self._hand_lock = asyncio.Lock()
        self._camera_lock = asyncio.Lock()

    @property
    def state(self) -> LocalParticipantState:
        return replace(self._state)

    @property
    def is_removed(self) -> bool:
        return self._state.status is ParticipantStatus.REMOVED

    async def set_muted(self, muted: bool, *, origin: Origin = Origin.LOCAL) -> bool:
        async with self._audio_lock:
            return await self._apply_muted(muted, origin)

    async def toggle_muted(self) -> bool:
        async with self._audio_lock:
            return await self._apply_muted(not self._state.muted, Origin.LOCAL)

    async def _apply_muted(self, muted: bool, origin: Origin) -> bool:
        if self.is_removed or self._state.muted == muted:
            return False
        previous = self._state.muted
        self._state.muted = muted
        try:
            await self._media.set_muted(muted)
        except Exception:
            self._state.muted = previous
            if origin is Origin.LOCAL:
                raise
            logger.exception("Could not apply %s mute=%s", origin.value, muted)
            return False
        logger.info("Microphone %s (%s)", "muted" if muted else "unmuted", origin.value)
        await self._publish_change(origin)
        return True

    async def set_video_enabled(self, enabled: bool, *, origin: Origin = Origin.LOCAL) -> bool:
        async with self._video_lock:
            return await self._apply_video(enabled, origin)

    async def toggle_video(self) -> bool:
        async with self._video_lock:
            return await self._apply_video(not self._state.video_enabled, Origin.LOCAL)

    async def _apply_video(self, enabled: bool, origin: Origin) -> bool:
        if self.is_removed or self._state.video_enabled == enabled:
            return False
        previous = self._state.video_enabled
        self._state.video_enabled = enabled
        try:
            await self._media.set_video_enabled(enabled)
        except Exception:
            self._state.video_enabled = previous
            if origin is Origin.LOCAL:
                raise
            logger.exception("Could not apply %s video=%s", origin.value, enabled)
            return False
        logger.info("Camera %s (%s)", "enabled" if enabled else "disabled", origin.value)
        await self._publish_change(origin)
        return True

    async def set_hand_raised(self, raised: bool, *, origin: Origin = Origin.LOCAL) -> bool:
        async with self._hand_lock:
            return await self._apply_hand(raised, origin)

    async def toggle_hand(self) -> bool:
        async with self._hand_lock:
            return await self._apply_hand(not self._state.hand_raised, Origin.LOCAL)

    async def _apply_hand(self, raised: bool, origin: Origin) -> bool:
        if self.is_removed or self._state.hand_raised == raised:
            return False
        self._state.hand_raised = raised
        await invoke(self._on_change, self.state, label="participant state callback")
        if origin is not Origin.SERVER_ACK and self._signaling is not None:
            await self._signaling.raise_hand(raised)
        return True

    async def switch_camera(self) -> Optional[CameraFacing]:
        async with self._camera_lock:
            if self.is_removed:
                return None
            facing = await self._media.switch_camera()
            if facing is None or facing is self._state.camera_facing:
                return facing
            self._state.camera_facing = facing
            await invoke(self._on_change, self.state, label="participant state callback")
            return facing

    async def remove(self) -> None:
        """Mark the participant removed; every later mutation is ignored."""
        if self.is_removed:
            return
        self._state.status = ParticipantStatus.REMOVED
        await invoke(self._on_change, self.state, label="participant state callback")

    async def _publish_change(self, origin: Origin) -> None:
        await invoke(self._on_change, self.state, label="participant state callback")
        if origin is Origin.SERVER_ACK or self._signaling is None or self.is_removed:
            return
        try:
            await self._signaling.set_presence(muted=self._state.muted, video_enabled=self._state.video_enabled)
        except Exception:
            logger.warning("Failed to announce presence change", exc_info=True)
