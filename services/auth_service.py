"""
Account management and the Zoom OAuth connect flow.
"""

import logging
from typing import Any, Dict, Optional

from postgrest.exceptions import APIError

from utils.auth import (
    REFRESH_TOKEN, create_oauth_state, create_session_tokens, hash_password,
    public_user, verify_jwt_token, verify_oauth_state, verify_password,
)
from utils.config import Settings
from utils.errors import AuthError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"


class AuthService:

    def __init__(self, repository, settings: Settings, zoom_service, credential_service, storage):
        self.repository = repository
        self.storage = storage
        self.settings = settings
        self.zoom_service = zoom_service
        self.credential_service = credential_service

    def _session(self, user: Dict[str, Any]) -> Dict[str, Any]:
        return {"user": public_user(user), "tokens": create_session_tokens(self.settings, user)}

    def register(self, email: str, password: str, name: Optional[str] = None) -> Dict[str, Any]:
        if self.repository.get_user_by_email(email):
            raise ValidationError("An account with this email already exists")
        try:
            user = self.repository.create_user({
                "email": email,
                "name": name,
                "password_hash": hash_password(password),
            })
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                raise ValidationError("An account with this email already exists")
            raise
        logger.info(f"Registered user {user['id']}")
        return self._session(user)

    def login(self, email: str, password: str) -> Dict[str, Any]:
        user = self.repository.get_user_by_email(email)
        if not user or not verify_password(user.get("password_hash"), password):
            raise AuthError("Invalid email or password")
        return self._session(user)

    def refresh(self, refresh_token: str) -> Dict[str, Any]:
        payload = verify_jwt_token(self.settings, refresh_token, expected_type=REFRESH_TOKEN)
        user = self.repository.get_user(payload["sub"])
        if not user:
            raise AuthError("User not found")
        return self._session(user)

    def update_profile(self, user: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
        if not changes:
            return public_user(user)
        if "email" in changes:
            changes["email"] = changes["email"].lower()
            other = self.repository.get_user_by_email(changes["email"])
            if other and other["id"] != user["id"]:
                raise ValidationError("An account with this email already exists")
        return public_user(self.repository.update_user(user["id"], changes))

    async def delete_account(self, user_id: str) -> None:
        # Rows cascade in the database; stored files have to be removed here.
        meeting_ids = self.repository.list_meeting_ids(user_id)
        recordings = self.repository.list_recordings_for_meetings(meeting_ids)
        exports = self.repository.list_exports_for_meetings(meeting_ids)

        self.repository.delete_user(user_id)

        for recording in recordings:
            await self.storage.delete_recording(recording.get("file_name"))
        for export in exports:
            await self.storage.delete_export(export.get("file_name"))
        logger.info(f"Deleted user {user_id} ({len(recordings)} recordings, {len(exports)} exports)")

    # -- Zoom connect --------------------------------------------------------

    def zoom_authorization(self, user_id: str) -> Dict[str, str]:
        state = create_oauth_state(self.settings, user_id)
        return {"authUrl": self.zoom_service.get_authorization_url(state), "state": state}

    async def connect_zoom(self, code: str, state: str) -> Dict[str, Any]:
        user_id = verify_oauth_state(self.settings, state)
        user = self.repository.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")

        token_data = await self.zoom_service.exchange_code_for_tokens(code)
        zoom_user = await self.zoom_service.get_user_info(token_data["access_token"])
        zoom_user_id = zoom_user.get("id")

        owner = self.repository.get_user_by_zoom_id(zoom_user_id) if zoom_user_id else None
        if owner and owner["id"] != user_id:
            raise ValidationError("This Zoom account is already linked to another user")

        user = await self.credential_service.store_credentials(
            user_id,
            token_data,
            zoom_user_id=zoom_user_id,
            zoom_email=zoom_user.get("email"),
        )
        logger.info(f"Connected Zoom account for user {user_id}")
        return self._session(user)

    async def disconnect_zoom(self, user_id: str) -> None:
        await self.credential_service.clear_credentials(user_id)

    def zoom_status(self, user: Dict[str, Any]) -> Dict[str, Any]:
        return self.credential_service.connection_status(user)
