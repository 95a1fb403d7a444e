import base64
import os
from functools import lru_cache

import structlog
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from sqlalchemy.ext.asyncio import async_sessionmaker

import thinking_chat.core.database as db_module
from thinking_chat.config import settings
from thinking_chat.core.database import StoredSettings
from thinking_chat.schemas.chat import ChatSettings
from thinking_chat.schemas.settings import SettingsResponse, SettingsUpdate

logger = structlog.get_logger()

DEFAULT_PROFILE = "default"


@lru_cache(maxsize=32)
def _derive_fernet_key(passphrase: str, salt: bytes) -> bytes:
    """Derive a Fernet key from a passphrase using PBKDF2."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=480_000,
    )
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode()))


def encrypt_secret(value: str, passphrase: str | None = None) -> str:
    """Encrypt a secret as ``<salt hex>:<fernet token>``."""
    salt = os.urandom(16)
    key = _derive_fernet_key(passphrase or settings.chat_secret_key, salt)
    token = Fernet(key).encrypt(value.encode()).decode()
    return f"{salt.hex()}:{token}"


def decrypt_secret(payload: str | None, passphrase: str | None = None) -> str | None:
    if not payload or ":" not in payload:
        return None
    salt_hex, token = payload.split(":", 1)
    key = _derive_fernet_key(passphrase or settings.chat_secret_key, bytes.fromhex(salt_hex))
    try:
        return Fernet(key).decrypt(token.encode()).decode()
    except InvalidToken:
        logger.warning("stored_api_key_undecryptable")
        return None


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    trimmed = value.strip()
    return trimmed or None


class SettingsStore:
    """Stored connection defaults (base URL, model, thinking prompt, API key).

    The API key is kept encrypted and only ever reported as ``api_key_set``.
    """

    def __init__(self, session_factory: async_sessionmaker | None = None, profile: str = DEFAULT_PROFILE):
        self._session_factory_override = session_factory
        self._profile = profile

    @property
    def _session_factory(self) -> async_sessionmaker:
        return self._session_factory_override or db_module.async_session

    async def get_settings(self) -> SettingsResponse:
        async with self._session_factory() as session:
            row = await session.get(StoredSettings, self._profile)
        return self._to_response(row)

    async def update_settings(self, data: SettingsUpdate) -> SettingsResponse:
        async with self._session_factory() as session:
            row = await session.get(StoredSettings, self._profile)
            if row is None:
                row = StoredSettings(profile=self._profile)
                session.add(row)

            # Fields left out of the update are untouched; blank strings clear them
            if data.base_url is not None:
                row.base_url = _clean(data.base_url)
            if data.model is not None:
                row.model = _clean(data.model)
            if data.thinking_prompt is not None:
                row.thinking_prompt = data.thinking_prompt if data.thinking_prompt.strip() else None
            if data.clear_api_key:
                row.api_key_encrypted = None
            elif _clean(data.api_key):
                row.api_key_encrypted = encrypt_secret(_clean(data.api_key))

            await session.commit()
            await session.refresh(row)
        logger.info("settings_updated", profile=self._profile, api_key_set=bool(row.api_key_encrypted))
        return self._to_response(row)

    async def apply_defaults(self, chat_settings: ChatSettings) -> ChatSettings:
        """Fill gaps in per-request settings from the stored profile and config."""
        async with self._session_factory() as session:
            row = await session.get(StoredSettings, self._profile)

        updates = {}
        if not chat_settings.base_url and row is not None and row.base_url:
            updates["base_url"] = row.base_url
        if not chat_settings.api_key and row is not None and row.api_key_encrypted:
            updates["api_key"] = decrypt_secret(row.api_key_encrypted)
        if not chat_settings.model.strip():
            updates["model"] = (row.model if row is not None and row.model else None) or settings.chat_default_model
        if (
            chat_settings.thinking is not None
            and not (chat_settings.thinking.system_prompt or "").strip()
            and row is not None
            and row.thinking_prompt
        ):
            updates["thinking"] = chat_settings.thinking.model_copy(update={"system_prompt": row.thinking_prompt})
        return chat_settings.model_copy(update=updates) if updates else chat_settings

    @staticmethod
    def _to_response(row: StoredSettings | None) -> SettingsResponse:
        if row is None:
            return SettingsResponse()
        return SettingsResponse(
            base_url=row.base_url,
            model=row.model,
            thinking_prompt=row.thinking_prompt,
            api_key_set=bool(row.api_key_encrypted),
        )
