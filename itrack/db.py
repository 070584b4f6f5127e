"""MongoDB connection, Beanie registration and the application context."""
import logging
from typing import Optional

import firebase_admin
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from itrack.config import Settings
from itrack.models.user import User
from itrack.services.attendance import AttendanceEngine
from itrack.services.directory import MongoUserDirectory
from itrack.services.fcm import AttendanceNotifier, init_firebase_app
from itrack.services.photos import (
    FirebaseStorageProvider,
    HttpUploadProvider,
    PhotoPipeline,
    PlaceholderProvider,
)
from itrack.services.s3 import S3PhotoProvider
from itrack.services.store import MongoAttendanceStore

logger = logging.getLogger(__name__)


class AppContext:
    """Everything the process talks to, built once at startup.

    Nothing here is created at import time; ``startup()`` connects and
    ``shutdown()`` releases the Mongo client and the Firebase app.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.client: Optional[AsyncIOMotorClient] = None
        self.firebase_app: Optional[firebase_admin.App] = None
        self.store: Optional[MongoAttendanceStore] = None
        self.directory: Optional[MongoUserDirectory] = None
        self.photos: Optional[PhotoPipeline] = None
        self.notifier: Optional[AttendanceNotifier] = None
        self.engine: Optional[AttendanceEngine] = None

    async def startup(self) -> None:
        """Connect to MongoDB, initialize Beanie and build the engine."""
        s = self.settings
        self.client = AsyncIOMotorClient(s.mongodb_url)
        database = self.client[s.mongodb_db_name]
        await init_beanie(database=database, document_models=[User])

        self.store = MongoAttendanceStore(self.client, database[s.attendance_collection])
        await self.store.ensure_indexes()
        self.directory = MongoUserDirectory()

        self.firebase_app = init_firebase_app(s.firebase_credentials_path, s.firebase_storage_bucket)
        self.photos = self.build_photo_pipeline()
        self.notifier = AttendanceNotifier(self.firebase_app, self.directory)
        self.engine = AttendanceEngine(self.store, self.directory, self.notifier)
        logger.info(f"Photo providers: {', '.join(self.photos.provider_names) or 'none'}")

    def build_photo_pipeline(self) -> PhotoPipeline:
        s = self.settings
        providers = [
            HttpUploadProvider(endpoint, s.photo_upload_api_key, s.photo_upload_timeout_seconds)
            for endpoint in s.upload_endpoints
        ]
        if s.s3_bucket_photos:
            providers.append(
                S3PhotoProvider(s.s3_bucket_photos, s.aws_region, s.aws_access_key_id, s.aws_secret_access_key)
            )
        if self.firebase_app is not None:
            providers.append(FirebaseStorageProvider(self.firebase_app, s.firebase_storage_bucket))
        if s.photo_placeholder_url:
            providers.append(PlaceholderProvider(s.photo_placeholder_url))
        if not providers:
            logger.warning("No photo upload provider configured. Time-in uploads will fail.")
        return PhotoPipeline(providers, s.photo_compress_threshold_bytes)

    async def shutdown(self) -> None:
        """Close MongoDB connection and the Firebase app."""
        if self.client:
            self.client.close()
            self.client = None
        if self.firebase_app is not None:
            firebase_admin.delete_app(self.firebase_app)
            self.firebase_app = None
