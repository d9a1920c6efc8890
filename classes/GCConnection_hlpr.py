import os
import time
import logging

from google.cloud import storage, vision

from sqlalchemy.orm import sessionmaker

from classes.entities import Base
from classes.google_helpers import _build_creds, create_session_factory, get_db_engine

logger = logging.getLogger("headstone_backend")


class GCConnection:
    def __init__(self) -> None:
        # ---- env config (shared) ----
        self.PROJECT_ID   = os.getenv("GOOGLE_CLOUD_PROJECT", "")
        self.BUCKET_NAME  = os.getenv("GCS_BUCKET_NAME", "")

        # ---- GCP clients (built on first use) ----
        self._bucket_creds = None
        self._storage_client = None
        self._vision_client = None

    # -------- GCP auth / creds --------
    @property
    def bucket_creds(self):
        if self._bucket_creds is None:
            self._bucket_creds = _build_creds()
        return self._bucket_creds

    @property
    def storage_client(self) -> storage.Client:
        if self._storage_client is None:
            self._storage_client = storage.Client(project=self.PROJECT_ID or None, credentials=self.bucket_creds)
        return self._storage_client

    @property
    def vision_client(self) -> vision.ImageAnnotatorClient:
        if self._vision_client is None:
            self._vision_client = vision.ImageAnnotatorClient(credentials=self.bucket_creds)
        return self._vision_client

    # -------- SQLAlchemy Session factory --------
    def build_db_session_factory(self) -> sessionmaker:
        if not getattr(self, "_sessionmaker", None):
            engine = get_db_engine()
            Base.metadata.create_all(engine)
            self._sessionmaker = create_session_factory(engine)

        return self._sessionmaker

    # -------- Storage helpers --------
    # Example:
    # gs_url, https_url = self.upload_to_gcs(self.BUCKET_NAME, object_path, data, "image/jpeg")
    def upload_to_gcs(self, bucket_name: str, blob_path: str, data: bytes,
                      content_type: str = "image/jpeg"):
        bucket = self.storage_client.bucket(bucket_name)
        blob = bucket.blob(blob_path)
        blob.upload_from_string(data, content_type=content_type)
        return f"gs://{bucket_name}/{blob_path}", f"https://storage.googleapis.com/{bucket_name}/{blob_path}"

    def upload_memorial_photo(self, memorial_id: str, data: bytes,
                              content_type: str = "image/jpeg") -> str:
        """
        Stores a photo under memorials/<id>/ and returns its https URL.
        """
        if not self.BUCKET_NAME:
            raise RuntimeError("GCS_BUCKET_NAME is not configured")
        blob_path = f"memorials/{memorial_id}/photo-{int(time.time() * 1000)}"
        _, https_url = self.upload_to_gcs(self.BUCKET_NAME, blob_path, data, content_type=content_type)
        logger.info(f"Uploaded photo for {memorial_id} to gs://{self.BUCKET_NAME}/{blob_path}")
        return https_url

    # -------- Vision helpers --------
    def detect_image_text(self, image_url: str) -> str:
        """
        Full text the Vision API reads on the image at image_url ("" when none).
        """
        image = vision.Image(source=vision.ImageSource(image_uri=image_url))
        response = self.vision_client.text_detection(image=image)
        if response.error.message:
            raise RuntimeError(f"Vision API error: {response.error.message}")
        annotations = response.text_annotations
        if not annotations:
            return ""
        # the first annotation holds the whole block of text
        return annotations[0].description
