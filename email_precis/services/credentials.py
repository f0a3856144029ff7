from typing import Optional, Protocol

from email_precis.errors import EncryptionError, MissingTokenError
from email_precis.models.storage import EncryptedField
from email_precis.services.crypto import FieldCipher, get_cipher
from email_precis.utils.logger import get_logger

logger = get_logger("credentials")


class TokenStore(Protocol):
    async def get_access_token(self, user_id: str) -> Optional[EncryptedField]: ...


class CredentialGate:
    """
    Resolves a usable mail-provider access token for a user. Token refresh
    belongs to the sign-in side; this only reads what it stored.
    """

    def __init__(self, token_store: TokenStore, cipher: Optional[FieldCipher] = None):
        self.token_store = token_store
        self.cipher = cipher

    async def resolve_access_token(self, user_id: str) -> str:
        """
        Raises MissingTokenError when no token is stored or it cannot be
        decrypted. Both mean the user has to reconnect their account.
        """
        stored = await self.token_store.get_access_token(user_id)
        if stored is None:
            logger.warning(f"No access token stored for user {user_id}")
            raise MissingTokenError(f"No access token stored for user {user_id}")

        try:
            token = (self.cipher or get_cipher()).decrypt(stored)
        except EncryptionError as e:
            logger.warning(f"Stored access token for user {user_id} could not be decrypted: {e}")
            raise MissingTokenError(f"Access token for user {user_id} is unreadable")

        if not token:
            raise MissingTokenError(f"Access token for user {user_id} is empty")
        return token
