"""Endpoint tokens kept in the system keychain."""

import json
import logging
from dataclasses import dataclass
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

__all__ = ["CredentialStore", "EndpointCredentials", "PEER", "CLOUD"]

logger = logging.getLogger(__name__)

SERVICE_NAME = "Hyrox Sync"

# Keychain account names
PEER = "peer"
CLOUD = "cloud"


@dataclass
class EndpointCredentials:
    """Credentials for one endpoint (companion link or cloud API)."""

    token: str
    user_id: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps({"token": self.token, "user_id": self.user_id})

    @classmethod
    def from_json(cls, data: str) -> "EndpointCredentials":
        parsed = json.loads(data)
        return cls(token=parsed["token"], user_id=parsed.get("user_id"))


class CredentialStore:
    """Reads and writes endpoint credentials via ``keyring``."""

    def __init__(self, service_name: str = SERVICE_NAME):
        self.service_name = service_name

    def store(self, endpoint: str, credentials: EndpointCredentials) -> bool:
        """Store credentials for an endpoint.

        Returns:
            True if stored successfully
        """
        try:
            keyring.set_password(self.service_name, endpoint, credentials.to_json())
            logger.info(f"Credentials stored for {endpoint}")
            return True
        except KeyringError as e:
            logger.error(f"Failed to store {endpoint} credentials: {e}")
            return False

    def load(self, endpoint: str) -> Optional[EndpointCredentials]:
        try:
            data = keyring.get_password(self.service_name, endpoint)
            if data:
                return EndpointCredentials.from_json(data)
            return None
        except KeyringError as e:
            logger.error(f"Failed to load {endpoint} credentials: {e}")
            return None
        except (json.JSONDecodeError, KeyError) as e:
            logger.error(f"Invalid {endpoint} credential format: {e}")
            return None

    def token_for(self, endpoint: str) -> Optional[str]:
        credentials = self.load(endpoint)
        return credentials.token if credentials else None

    def delete(self, endpoint: str) -> bool:
        """Delete stored credentials (True if gone afterwards)."""
        try:
            keyring.delete_password(self.service_name, endpoint)
            logger.info(f"Credentials deleted for {endpoint}")
            return True
        except PasswordDeleteError:
            return True
        except KeyringError as e:
            logger.error(f"Failed to delete {endpoint} credentials: {e}")
            return False
