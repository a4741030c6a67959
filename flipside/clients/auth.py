import json
import logging
import os
from pathlib import Path
from typing import Optional
from pydantic import BaseModel

logger = logging.getLogger(__name__)

class OAuthCredentials(BaseModel):
    consumer_key: str
    consumer_secret: str
    oauth_token: Optional[str] = None
    oauth_token_secret: Optional[str] = None
    username: Optional[str] = None

class CredentialStore:
    """
    Holds the Discogs consumer and access credentials.

    ``invalidate`` drops the access token after the server rejects it, so every
    later request fails fast until ``restore`` installs a working token.
    """

    def __init__(self, credentials: Optional[OAuthCredentials] = None, path: Optional[str] = None):
        self.path = Path(path) if path else None
        self.credentials = credentials
        if self.credentials is None and self.path is not None:
            self._load()

    @classmethod
    def from_settings(cls, settings) -> "CredentialStore":
        credentials = None
        if settings.DISCOGS_CONSUMER_KEY and settings.DISCOGS_CONSUMER_SECRET:
            credentials = OAuthCredentials(
                consumer_key=settings.DISCOGS_CONSUMER_KEY,
                consumer_secret=settings.DISCOGS_CONSUMER_SECRET,
                oauth_token=settings.DISCOGS_OAUTH_TOKEN,
                oauth_token_secret=settings.DISCOGS_OAUTH_TOKEN_SECRET,
                username=settings.DISCOGS_USERNAME,
            )
        return cls(credentials=credentials, path=settings.DISCOGS_CREDENTIALS_PATH)

    @property
    def is_connected(self) -> bool:
        c = self.credentials
        return bool(c and c.oauth_token and c.oauth_token_secret)

    @property
    def username(self) -> Optional[str]:
        if not self.credentials or not self.credentials.username:
            return None
        return self.credentials.username.strip() or None

    def invalidate(self):
        if not self.is_connected:
            return
        logger.warning("Discarding Discogs access token; reconnect the account to continue.")
        self.credentials = self.credentials.model_copy(update={"oauth_token": None, "oauth_token_secret": None})
        self._save()

    def restore(self, credentials: OAuthCredentials):
        self.credentials = credentials
        logger.info(f"Discogs credentials restored for {credentials.username or 'unknown user'}")
        self._save()

    def _load(self):
        if not self.path.exists():
            logger.info(f"No credentials file found at {self.path}")
            return
        try:
            with open(self.path, 'r') as f:
                self.credentials = OAuthCredentials(**json.load(f))
        except Exception as e:
            logger.error(f"Failed to load credentials from {self.path}: {e}")

    def _save(self):
        if self.path is None or self.credentials is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix('.tmp')
            with open(tmp_path, 'w') as f:
                json.dump(self.credentials.model_dump(), f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"Failed to save credentials to {self.path}: {e}")
