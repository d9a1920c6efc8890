# classes/memorial_service.py

import logging
import time
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from classes.base_utils import BaseUtils
from classes.entities import DEFAULT_TIER_SORT_ORDER, TIER_SORT_ORDER
from classes.errors import FunctionError
from classes.google_helpers import BIO_MODEL, PROJECT_ID, REGION
from classes.llm_client import LlmClient
from classes.memorial_store import ArrayUnion, MemorialStore

logger = logging.getLogger("headstone_backend")

SEARCH_MIN_CHARS = 2
SEARCH_LIMIT = 10
RECENT_LIMIT = 5
DEFAULT_TIER = "memorial"

# Statuses shown to visitors on the home page and the map.
PUBLIC_STATUSES = ("approved", "published")

BIO_PROMPT = """You are a compassionate biographer. Write a warm, heartfelt, and well-written biography for a memorial website. The biography should be a single, cohesive paragraph.

The person's name is: {name}

Here are some notes and memories provided by their family. Use these notes to write the biography. Do not treat them as a list of questions to answer; instead, weave the details into a natural narrative:
- {prompt_data}

Biography:"""


class RelativeLink(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = ""
    relationship: str = ""
    memorial_id: Optional[str] = Field(default=None, alias="memorialId")

    @field_validator("memorial_id", mode="before")
    @classmethod
    def _blank_is_unlinked(cls, value):
        if value is None:
            return None
        value = str(value).strip()
        return value or None


class GeoPoint(BaseModel):
    lat: float
    lng: float


class MemorialForm(BaseModel):
    # the web form posts camelCase (birthDate, cemeteryAddress, mainPhoto)
    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)

    name: str
    title: Optional[str] = None
    birth_date: Optional[str] = None
    death_date: Optional[str] = None
    bio: Optional[str] = None
    tier: Optional[str] = None
    status: Optional[str] = None
    cemetery_name: Optional[str] = None
    cemetery_address: Optional[str] = None
    relatives: List[RelativeLink] = Field(default_factory=list)
    milestones: List[Dict[str, Any]] = Field(default_factory=list)
    quotes: List[Dict[str, Any]] = Field(default_factory=list)
    photos: List[str] = Field(default_factory=list)
    main_photo: Optional[str] = None
    location: Optional[GeoPoint] = None


class ScoutSubmission(BaseModel):
    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)

    name: str = "Untitled Draft"
    birth_date: str = ""
    death_date: str = ""
    location: GeoPoint
    photos: List[str] = Field(default_factory=list)
    source_memorial_id: Optional[str] = None
    relationship_to_source: Optional[str] = None


class Contributor(BaseModel):
    name: str
    email: str = ""


class MemorialService(BaseUtils):
    """
    Curator and scout operations on memorial records. Every write goes through
    the MemorialStore, so the relative-link triggers fire for all of them.
    """

    def __init__(self, store: MemorialStore, *, gc_connection=None, bio_llm=None):
        self.store = store
        self.gc_connection = gc_connection
        self._bio_llm = bio_llm

    # -----------------------
    # Helpers
    # -----------------------

    def _require_auth(self, auth_uid: Optional[str], message: str = "You must be logged in.") -> str:
        if not auth_uid:
            raise FunctionError(FunctionError.UNAUTHENTICATED, message)
        return str(auth_uid)

    def _require_memorial(self, memorial_id: Optional[str]) -> dict:
        if not memorial_id:
            raise FunctionError(FunctionError.INVALID_ARGUMENT, "A memorialId is required.")
        memorial = self.store.get(memorial_id)
        if memorial is None:
            raise FunctionError(FunctionError.NOT_FOUND, "No memorial found with that ID.")
        return memorial

    def _require_curator(self, memorial: dict, auth_uid: str) -> None:
        if memorial.get("curator_id") != auth_uid:
            raise FunctionError(
                FunctionError.PERMISSION_DENIED,
                "You do not have permission to change this memorial.",
            )

    def _validation_error(self, e: ValidationError) -> FunctionError:
        return FunctionError(FunctionError.INVALID_ARGUMENT, "Invalid memorial data.", {"errors": e.errors(include_url=False, include_context=False, include_input=False)})

    # -----------------------
    # Curator form
    # -----------------------

    def save_memorial(self, auth_uid: Optional[str], data: Dict[str, Any],
                      memorial_id: Optional[str] = None) -> dict:
        uid = self._require_auth(auth_uid, "You must be signed in to save a memorial.")
        try:
            form = MemorialForm.model_validate(data or {})
        except ValidationError as e:
            raise self._validation_error(e)

        existing = self.store.get(memorial_id) if memorial_id else None
        if existing is not None:
            if existing.get("status") == "pending":
                raise FunctionError(
                    FunctionError.PERMISSION_DENIED,
                    "Pending submissions are approved with approveAndLinkSubmission, not edited.",
                )
            self._require_curator(existing, uid)

        new_id = memorial_id or self.generate_slug_id(form.name)
        record = form.model_dump(exclude_unset=True, exclude={"relatives", "location"})
        record["relatives"] = [rel.model_dump() for rel in form.relatives]
        if form.location is not None:
            record["location"] = form.location.model_dump()
        record["curator_id"] = uid
        record["status"] = form.status or "approved"
        record["birth_month_day"] = self._month_day(form.birth_date)
        record["death_month_day"] = self._month_day(form.death_date)

        if existing is None:
            record["tier"] = form.tier or DEFAULT_TIER
            record["tier_sort_order"] = TIER_SORT_ORDER.get(record["tier"], DEFAULT_TIER_SORT_ORDER)

        if form.tier == "historian" and form.cemetery_address:
            try:
                record["location"] = self.geocode_address(form.cemetery_address)
            except Exception as e:
                self.color_print(f"save_memorial(): geocoding failed for {new_id} -> {e}", color="red")

        saved = self.store.set(new_id, record, merge=True)
        logger.info(f"Memorial {new_id} saved by {uid}.")
        return saved

    def delete_memorial(self, auth_uid: Optional[str], memorial_id: Optional[str]) -> dict:
        uid = self._require_auth(auth_uid)
        memorial = self._require_memorial(memorial_id)
        self._require_curator(memorial, uid)
        self.store.delete(memorial_id)
        logger.info(f"Memorial {memorial_id} deleted by {uid}.")
        return {"success": True}

    def search_memorials(self, term: Optional[str], limit: int = SEARCH_LIMIT) -> List[dict]:
        """
        Approved memorials whose name starts with term (case-insensitive).
        """
        term = (term or "").lower()
        if len(term) < SEARCH_MIN_CHARS:
            raise FunctionError(
                FunctionError.INVALID_ARGUMENT,
                f"Please type at least {SEARCH_MIN_CHARS} characters.",
            )
        return self.store.query(status="approved", name_prefix=term, limit=limit)

    def list_curator_memorials(self, auth_uid: Optional[str], status: Optional[str] = None) -> List[dict]:
        uid = self._require_auth(auth_uid)
        return self.store.query(curator_id=uid, status=status)

    def list_pending_submissions(self, auth_uid: Optional[str]) -> List[dict]:
        self._require_auth(auth_uid)
        return self.store.query(status="pending")

    # -----------------------
    # Public pages
    # -----------------------

    def list_recent_memorials(self, limit: int = RECENT_LIMIT) -> List[dict]:
        return self.store.query(status=PUBLIC_STATUSES, limit=limit)

    def list_map_memorials(self) -> dict:
        """
        GeoJSON FeatureCollection of the public memorials that have a location.
        """
        features = []
        for memorial in self.store.query(status=PUBLIC_STATUSES):
            location = memorial.get("location") or {}
            if location.get("lat") is None or location.get("lng") is None:
                continue
            features.append({
                "type": "Feature",
                "geometry": {"type": "Point", "coordinates": [location["lng"], location["lat"]]},
                "properties": {"memorial_id": memorial["id"], "title": memorial.get("name") or ""},
            })
        return {"type": "FeatureCollection", "features": features}

    # -----------------------
    # Scout mode
    # -----------------------

    def save_pin_as_draft(self, auth_uid: Optional[str], lat, lng) -> dict:
        uid = self._require_auth(auth_uid, "You must be signed in to save a pin.")
        try:
            location = GeoPoint(lat=lat, lng=lng)
        except ValidationError as e:
            raise self._validation_error(e)

        memorial_id = self.generate_slug_id(f"draft-{int(time.time() * 1000)}")
        return self.store.create(memorial_id, {
            "curator_id": uid,
            "location": location.model_dump(),
            "status": "draft",
            "name": "Untitled Memorial",
            "tier": DEFAULT_TIER,
            "tier_sort_order": DEFAULT_TIER_SORT_ORDER,
        })

    def submit_scout_memorial(self, auth_uid: Optional[str], data: Dict[str, Any],
                              contributor: Optional[Dict[str, Any]] = None) -> dict:
        """
        Signed-in curators get a draft they own; guests produce a pending
        submission that waits for curator approval.
        """
        try:
            submission = ScoutSubmission.model_validate(data or {})
            guest = None if auth_uid else Contributor.model_validate(contributor or {})
        except ValidationError as e:
            raise self._validation_error(e)

        name = submission.name or "Untitled Draft"
        record = {
            "name": name,
            "birth_date": submission.birth_date,
            "death_date": submission.death_date,
            "location": submission.location.model_dump(),
            "photos": list(submission.photos),
            "main_photo": submission.photos[0] if submission.photos else None,
            "tier": DEFAULT_TIER,
            "tier_sort_order": DEFAULT_TIER_SORT_ORDER,
            "relatives": [],
        }
        if submission.source_memorial_id:
            record["source_memorial_id"] = submission.source_memorial_id
            record["relationship_to_source"] = submission.relationship_to_source

        if auth_uid:
            record["status"] = "draft"
            record["curator_id"] = str(auth_uid)
        else:
            record["status"] = "pending"
            record["submitter_name"] = guest.name
            record["submitter_email"] = guest.email

        return self.store.create(self.generate_slug_id(name), record)

    def attach_photo(self, auth_uid: Optional[str], memorial_id: Optional[str],
                     data: bytes, content_type: str = "image/jpeg") -> dict:
        uid = self._require_auth(auth_uid)
        memorial = self._require_memorial(memorial_id)
        self._require_curator(memorial, uid)
        if not data:
            raise FunctionError(FunctionError.INVALID_ARGUMENT, "The photo is empty.")
        if self.gc_connection is None:
            raise FunctionError(FunctionError.INTERNAL, "Photo storage is not configured.")

        try:
            url = self.gc_connection.upload_memorial_photo(memorial_id, data, content_type=content_type)
        except Exception as e:
            self.color_print(f"attach_photo(): upload failed for {memorial_id} -> {e}", color="red")
            raise FunctionError(FunctionError.INTERNAL, "Failed to upload photo.")

        fields: Dict[str, Any] = {"photos": ArrayUnion(url)}
        if not memorial.get("main_photo"):
            fields["main_photo"] = url
        return self.store.update(memorial_id, fields)

    # -----------------------
    # Callable functions
    # -----------------------

    def upgrade_memorial_tier(self, auth_uid: Optional[str], memorial_id: Optional[str],
                              new_tier: Optional[str]) -> dict:
        uid = self._require_auth(auth_uid, "You must be logged in to upgrade a plan.")
        if not memorial_id or not new_tier:
            raise FunctionError(
                FunctionError.INVALID_ARGUMENT,
                'The function must be called with "memorialId" and "newTier" arguments.',
            )
        memorial = self._require_memorial(memorial_id)
        if memorial.get("curator_id") != uid:
            raise FunctionError(
                FunctionError.PERMISSION_DENIED,
                "You do not have permission to upgrade this memorial.",
            )

        self.store.update(memorial_id, {
            "tier": new_tier,
            "tier_sort_order": TIER_SORT_ORDER.get(new_tier, DEFAULT_TIER_SORT_ORDER),
        })
        return {"success": True, "message": f"Memorial upgraded to {new_tier}!"}

    def geocode_address(self, address: Optional[str]) -> dict:
        # TODO: call a real geocoding provider; this returns a fixed point.
        if not address:
            raise FunctionError(
                FunctionError.INVALID_ARGUMENT,
                'The function must be called with an "address" argument.',
            )
        logger.info(f"Geocoding placeholder for address: {address}")
        return {"lat": 40.7128, "lng": -74.0060}

    def transcribe_headstone_image(self, auth_uid: Optional[str], image_url: Optional[str]) -> dict:
        self._require_auth(auth_uid)
        if not image_url:
            raise FunctionError(
                FunctionError.INVALID_ARGUMENT,
                'The function must be called with an "imageUrl" argument.',
            )
        if self.gc_connection is None:
            raise FunctionError(FunctionError.INTERNAL, "Failed to process image with Vision API.")

        try:
            text = self.gc_connection.detect_image_text(image_url)
        except Exception as e:
            self.color_print(f"transcribe_headstone_image(): Vision API error -> {e}", color="red")
            raise FunctionError(FunctionError.INTERNAL, "Failed to process image with Vision API.")
        return {"text": text or "No text found."}

    def _get_bio_llm(self):
        if self._bio_llm is None:
            self._bio_llm = LlmClient(BIO_MODEL, vertex_project=PROJECT_ID, vertex_region=REGION)
        return self._bio_llm

    def generate_bio(self, auth_uid: Optional[str], name: Optional[str], prompt_data: Optional[str]) -> dict:
        self._require_auth(auth_uid, "You must be logged in to use this feature.")
        if not name or not prompt_data:
            raise FunctionError(
                FunctionError.INVALID_ARGUMENT,
                'The function must be called with "name" and "promptData".',
            )

        prompt = BIO_PROMPT.format(name=name, prompt_data=self._coerce_field_to_str(prompt_data))
        try:
            biography = self._get_bio_llm().invoke(prompt)
        except Exception as e:
            self.color_print(f"generate_bio(): Vertex AI error -> {e}", color="red")
            raise FunctionError(FunctionError.INTERNAL, "Failed to generate biography from AI service.")
        return {"biography": biography}
