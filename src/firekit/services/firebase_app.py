"""Firebase app initialization.

Builds the connection object every service is handed at construction time.
Credentials come from a service account file or from the
FIREBASE_PROJECT_ID / FIREBASE_CLIENT_EMAIL / FIREBASE_PRIVATE_KEY trio.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import firebase_admin
from firebase_admin import credentials

from firekit.config.settings import Settings, settings as default_settings
from firekit.errors import FirebaseConfigError, NotInitializedError
from firekit.services.backing_store import BackingStore, FirebaseBackingStore, InMemoryBackingStore
from firekit.services.storage_service import BlobStore, FirebaseBlobStore, InMemoryBlobStore

logger = logging.getLogger(__name__)


@dataclass
class FirebaseConnection:
    store: Optional[BackingStore]
    blob_store: Optional[BlobStore] = None
    app: Any = None
    closed: bool = False

    @property
    def is_initialized(self) -> bool:
        return not self.closed and self.store is not None

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.app is not None:
            firebase_admin.delete_app(self.app)
            logger.info("Firebase app %s deleted", self.app.name)


def require_connection(connection: Optional[FirebaseConnection]) -> FirebaseConnection:
    if connection is None or not connection.is_initialized:
        raise NotInitializedError()
    return connection


def ensure_firebase_env(config: Settings) -> None:
    if config.firebase_credentials_file:
        required = {"FIREBASE_DATABASE_URL": config.firebase_database_url}
    else:
        required = {
            "FIREBASE_PROJECT_ID": config.firebase_project_id,
            "FIREBASE_CLIENT_EMAIL": config.firebase_client_email,
            "FIREBASE_PRIVATE_KEY": config.firebase_private_key,
            "FIREBASE_DATABASE_URL": config.firebase_database_url,
        }
    missing = [k for k, v in required.items() if not v]
    if missing:
        raise FirebaseConfigError(f"Missing Firebase env vars: {', '.join(missing)}")


def _credential(config: Settings) -> credentials.Base:
    if config.firebase_credentials_file:
        return credentials.Certificate(config.firebase_credentials_file)
    return credentials.Certificate(
        {
            "type": "service_account",
            "project_id": config.firebase_project_id,
            "client_email": config.firebase_client_email,
            "private_key": config.firebase_private_key,
            "token_uri": "https://oauth2.googleapis.com/token",
        }
    )


def initialize_firebase(config: Optional[Settings] = None) -> FirebaseConnection:
    config = config or default_settings
    if config.use_emulator:
        logger.info("FIREKIT_USE_EMULATOR set, using in-memory backends")
        return in_memory_connection()

    ensure_firebase_env(config)
    try:
        app = firebase_admin.get_app()
    except ValueError:
        options = {"databaseURL": config.firebase_database_url}
        if config.firebase_storage_bucket:
            options["storageBucket"] = config.firebase_storage_bucket
        app = firebase_admin.initialize_app(_credential(config), options)
        logger.info("Firebase app initialized for %s", config.firebase_database_url)

    blob_store = None
    if config.firebase_storage_bucket:
        blob_store = FirebaseBlobStore(app=app, bucket_name=config.firebase_storage_bucket)
    return FirebaseConnection(
        store=FirebaseBackingStore(app=app, url=config.firebase_database_url),
        blob_store=blob_store,
        app=app,
    )


def in_memory_connection() -> FirebaseConnection:
    return FirebaseConnection(store=InMemoryBackingStore(), blob_store=InMemoryBlobStore())
