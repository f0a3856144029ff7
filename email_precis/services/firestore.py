from typing import Optional

from google.cloud import firestore

from email_precis.config import CFG
from email_precis.models.storage import EncryptedField, ProcessedEmailRecord
from email_precis.services.crypto import get_cipher
from email_precis.utils.logger import logger


db: Optional[firestore.AsyncClient] = None


def get_db() -> firestore.AsyncClient:
    global db
    if db is None:
        try:
            db = firestore.AsyncClient(project=CFG.project_id, database=CFG.firestore_name)
        except Exception as e:
            logger.error(f"Failed to initialize Firestore client: {e}")
            raise
    return db


class FirestoreService:
    """
    Manages all persistent state interaction with Google Firestore: the
    OAuth account documents holding encrypted access tokens, and the
    processed email records under each user.
    """

    def __init__(self, client: Optional[firestore.AsyncClient] = None):
        self.db = client or get_db()

    def _account_ref(self, user_id: str):
        return self.db.collection(CFG.accounts_collection).document(
            f"{CFG.mail_provider}:{user_id}"
        )

    def _user_ref(self, user_id: str):
        return self.db.collection(CFG.users_collection).document(user_id)

    def _email_ref(self, user_id: str, email_id: str):
        return self._user_ref(user_id).collection(CFG.emails_collection).document(email_id)

    ####################
    ### Credentials ###
    ####################

    async def get_access_token(self, user_id: str) -> Optional[EncryptedField]:
        """
        Returns the stored, still encrypted access token for the user, or None.
        """
        doc = await self._account_ref(user_id).get()
        if not doc.exists:
            return None

        token = (doc.to_dict() or {}).get("access_token")
        if not token:
            return None
        return EncryptedField.model_validate(token)

    async def save_access_token(self, user_id: str, access_token: str) -> None:
        encrypted = get_cipher().encrypt(access_token)
        await self._account_ref(user_id).set(
            {
                "provider": CFG.mail_provider,
                "user_id": user_id,
                "access_token": encrypted.model_dump(by_alias=True),
                "updated_at": firestore.SERVER_TIMESTAMP,
            },
            merge=True,
        )
        logger.info(f"Stored access token for user {user_id}")

    #######################
    ### Processed email ###
    #######################

    async def is_email_processed(self, user_id: str, email_id: str) -> bool:
        doc = await self._email_ref(user_id, email_id).get()
        return doc.exists

    async def save_processed_email(self, record: ProcessedEmailRecord) -> None:
        """
        Writes the record and bumps the user's analysed-email counter in one
        transaction. Re-saving an existing record does not count twice.
        """
        user_ref = self._user_ref(record.email_owner)
        email_ref = self._email_ref(record.email_owner, record.email_id)

        @firestore.async_transactional
        async def save_in_transaction(transaction: firestore.AsyncTransaction):
            existing = await email_ref.get(transaction=transaction)
            transaction.set(email_ref, record.to_document())
            if not existing.exists:
                transaction.set(
                    user_ref,
                    {"total_emails_analyzed": firestore.Increment(1)},
                    merge=True,
                )

        try:
            transaction = self.db.transaction()
            await save_in_transaction(transaction)
        except Exception as e:
            logger.error(f"Transaction failed for email {record.email_id}: {e}")
            raise

        logger.info(f"Saved processed email {record.email_id} for user {record.email_owner}")


firestore_service: Optional[FirestoreService] = None


def get_firestore_service() -> FirestoreService:
    global firestore_service
    if firestore_service is None:
        firestore_service = FirestoreService()
    return firestore_service
