"""
LiveAvatar Session Module

Creates, stops and keeps alive LiveAvatar sessions. Creating a session is a
two-step exchange: a session token is issued for the avatar and mode, then
the session is started with that token, which returns the LiveKit room
credentials.
"""

from typing import Any, Dict, Optional

import aiohttp

from maca.config import LiveAvatarConfig, settings
from maca.errors import VendorError
from maca.logger import get_logger
from maca.messages import msg
from .providers import AvatarMode, SessionCredentials
from .vendor import VendorClient

logger = get_logger(__name__)


class LiveAvatarClient(VendorClient):
    """LiveAvatar session API."""
    name = "LiveAvatar"

    def __init__(self, config: Optional[LiveAvatarConfig] = None, session: Optional[aiohttp.ClientSession] = None):
        super().__init__(session=session)
        self._config = config or settings.liveavatar

    def _api_key(self) -> str:
        if not self._config.api_key:
            raise VendorError(msg("error.session_not_configured"), status=500)
        return self._config.api_key

    @staticmethod
    def _bearer(session_token: str) -> Dict[str, str]:
        return {"accept": "application/json", "authorization": f"Bearer {session_token}"}

    async def create_session(
        self,
        mode: AvatarMode = AvatarMode.CUSTOM,
        avatar_id: Optional[str] = None,
        voice_id: Optional[str] = None,
    ) -> SessionCredentials:
        """
        Issue a token and start a session.

        Raises:
            VendorError: On API failure, or 502 when required fields are missing
        """
        api_key = self._api_key()
        avatar_id = avatar_id or self._config.avatar_id
        if not avatar_id:
            raise VendorError("LIVEAVATAR_AVATAR_ID is not set", status=500)

        payload: Dict[str, Any] = {"mode": mode.value, "avatar_id": avatar_id}
        voice_id = voice_id or self._config.voice_id
        if mode == AvatarMode.FULL and voice_id:
            payload["avatar_persona"] = {"voice_id": voice_id}

        token_data = await self._post(
            self._config.endpoint("token"),
            headers={"X-API-KEY": api_key, "accept": "application/json"},
            json=payload,
        )
        session_id = token_data.get("session_id") if isinstance(token_data, dict) else None
        session_token = token_data.get("session_token") if isinstance(token_data, dict) else None
        if not session_id or not session_token:
            raise VendorError("Invalid response from LiveAvatar token API - missing session data", status=502)

        start_data = await self._post(
            self._config.endpoint("start"),
            headers=self._bearer(session_token),
        )
        if not isinstance(start_data, dict):
            start_data = {}
        livekit_url = start_data.get("livekit_url")
        livekit_token = start_data.get("livekit_client_token")
        if not livekit_url or not livekit_token:
            raise VendorError("Invalid response from LiveAvatar start API - missing LiveKit data", status=502)

        logger.info(f"LiveAvatar session {session_id} started ({mode.value})")
        return SessionCredentials(
            session_id=session_id,
            session_token=session_token,
            livekit_url=livekit_url,
            livekit_client_token=livekit_token,
        )

    async def stop_session(self, session_token: str) -> None:
        await self._post(self._config.endpoint("stop"), headers=self._bearer(session_token))
        logger.info("LiveAvatar session stopped")

    async def keep_alive(self, session_token: str) -> None:
        await self._post(self._config.endpoint("keep-alive"), headers=self._bearer(session_token))
        logger.debug("LiveAvatar keep-alive sent")
