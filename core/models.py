"""
Core data models for the Practice Sync service

Defines the queued publish payload and its merge rule, directory identities,
backend posts and attachment references, the activity choice variant, and the
typed request bodies sent to the REST backend.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, List, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_ATTACHMENT_BUCKET = "attachments"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Activity choice
# =============================================================================


class SessionActivityType(IntEnum):
    PRACTICE = 0
    REHEARSAL = 1
    RECORDING = 2
    LESSON = 3
    PERFORMANCE = 4
    WRITING = 5

    @property
    def label(self) -> str:
        return self.name.title()


@dataclass(frozen=True)
class CoreActivity:
    activity: SessionActivityType

    @property
    def label(self) -> str:
        return self.activity.label

    def serialize(self) -> str:
        return f"core:{int(self.activity)}"


@dataclass(frozen=True)
class CustomActivity:
    name: str

    @property
    def label(self) -> str:
        return self.name

    def serialize(self) -> str:
        return f"custom:{self.name}"


ActivityChoice = Union[CoreActivity, CustomActivity]
DEFAULT_ACTIVITY = CoreActivity(SessionActivityType.PRACTICE)


def parse_activity_choice(raw: Optional[str]) -> ActivityChoice:
    """
    Parse a persisted activity reference ("core:<n>" or "custom:<name>").

    Anything unrecognized, including an out-of-range core index or a blank
    custom name, falls back to Practice.
    """
    if not raw:
        return DEFAULT_ACTIVITY
    raw = raw.strip()
    if raw.startswith("core:"):
        try:
            return CoreActivity(SessionActivityType(int(raw[len("core:"):])))
        except ValueError:
            return DEFAULT_ACTIVITY
    if raw.startswith("custom:"):
        name = raw[len("custom:"):].strip()
        return CustomActivity(name) if name else DEFAULT_ACTIVITY
    return DEFAULT_ACTIVITY


# =============================================================================
# Publish payload
# =============================================================================


class PublishPayload(BaseModel):
    """One pending publish intent, keyed by post id"""

    model_config = ConfigDict(extra="ignore")

    id: UUID
    session_ref: Optional[UUID] = None
    session_timestamp: Optional[datetime] = None
    title: Optional[str] = None
    duration_seconds: Optional[int] = None
    activity_type: Optional[str] = None
    activity_detail: Optional[str] = None
    instrument_label: Optional[str] = None
    mood: Optional[int] = None
    effort: Optional[int] = None
    is_public: bool = True
    notes: Optional[str] = None
    notes_are_private: bool = False

    @classmethod
    def stub(cls, post_id: UUID) -> "PublishPayload":
        return cls(id=post_id)

    @property
    def has_metadata(self) -> bool:
        """True when anything beyond the id and visibility is carried."""
        return (
            any(
                value is not None
                for value in (
                    self.session_ref,
                    self.session_timestamp,
                    self.title,
                    self.duration_seconds,
                    self.activity_type,
                    self.activity_detail,
                    self.instrument_label,
                    self.mood,
                    self.effort,
                    self.notes,
                )
            )
            or self.notes_are_private
        )

    @property
    def activity(self) -> ActivityChoice:
        return parse_activity_choice(self.activity_type)

    def merged_with(self, new: "PublishPayload") -> "PublishPayload":
        """
        Merge a re-enqueued payload for the same id into this one.

        An explicit private always wins; otherwise any metadata makes the post
        public; a bare stub leaves visibility untouched. Non-null new values
        replace old ones, and notes privacy only follows new notes.
        """
        if new.is_public is False:
            is_public = False
        elif new.has_metadata:
            is_public = True
        else:
            is_public = self.is_public

        def pick(field_name: str):
            new_value = getattr(new, field_name)
            return new_value if new_value is not None else getattr(self, field_name)

        return PublishPayload(
            id=self.id,
            session_ref=pick("session_ref"),
            session_timestamp=pick("session_timestamp"),
            title=pick("title"),
            duration_seconds=pick("duration_seconds"),
            activity_type=pick("activity_type"),
            activity_detail=pick("activity_detail"),
            instrument_label=pick("instrument_label"),
            mood=pick("mood"),
            effort=pick("effort"),
            is_public=is_public,
            notes=pick("notes"),
            notes_are_private=(
                new.notes_are_private if new.notes is not None else self.notes_are_private
            ),
        )


class QueuedPublish(PublishPayload):
    """A payload as held by the queue, with its delivery bookkeeping"""

    queued_at: datetime = Field(default_factory=utc_now)
    attempts: int = 0
    last_error: Optional[str] = None

    def to_payload(self) -> PublishPayload:
        return PublishPayload.model_validate(
            self.model_dump(exclude={"queued_at", "attempts", "last_error"})
        )

    @classmethod
    def from_payload(
        cls, payload: PublishPayload, previous: Optional["QueuedPublish"] = None
    ) -> "QueuedPublish":
        data = payload.model_dump()
        if previous is not None:
            data.update(
                queued_at=previous.queued_at,
                attempts=previous.attempts,
                last_error=previous.last_error,
            )
        return cls.model_validate(data)


# =============================================================================
# Directory identity
# =============================================================================


class DirectoryIdentity(BaseModel):
    """Public-facing identity record for a backend user"""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    user_id: str
    account_handle: Optional[str] = Field(default=None, alias="account_id")
    display_name: Optional[str] = None
    location: Optional[str] = None
    avatar_key: Optional[str] = None


# =============================================================================
# Attachments and posts
# =============================================================================


class AttachmentKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"


class AttachmentRef(BaseModel):
    """Reference stored in posts.attachments pointing at a storage object"""

    kind: AttachmentKind
    bucket: str = DEFAULT_ATTACHMENT_BUCKET
    path: str
    display_name: Optional[str] = None

    @classmethod
    def parse_list(cls, raw: Any) -> List["AttachmentRef"]:
        """
        Parse the attachments column, accepting a list, a JSON string or bytes.
        Entries with an unknown kind or an empty path are dropped.
        """
        if raw is None:
            return []
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8", errors="replace")
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except ValueError:
                return []
        if not isinstance(raw, list):
            return []

        refs: List[AttachmentRef] = []
        for item in raw:
            if isinstance(item, AttachmentRef):
                refs.append(item)
                continue
            if not isinstance(item, dict):
                continue
            kind_raw = str(item.get("kind") or "").strip().lower()
            path = str(item.get("path") or "").strip()
            if not path:
                continue
            try:
                kind = AttachmentKind(kind_raw)
            except ValueError:
                continue
            bucket = str(item.get("bucket") or "").strip() or DEFAULT_ATTACHMENT_BUCKET
            display_name = item.get("display_name")
            refs.append(
                cls(kind=kind, bucket=bucket, path=path, display_name=display_name)
            )
        return refs


class BackendPost(BaseModel):
    """A post row as returned by the REST backend"""

    model_config = ConfigDict(extra="ignore")

    id: UUID
    owner_user_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    session_timestamp: Optional[str] = None
    title: Optional[str] = None
    duration_seconds: Optional[int] = None
    activity_type: Optional[str] = None
    activity_label: Optional[str] = None
    activity_detail: Optional[str] = None
    instrument_label: Optional[str] = None
    mood: Optional[int] = None
    effort: Optional[int] = None
    notes: Optional[str] = None
    is_public: Optional[bool] = None
    attachments: List[AttachmentRef] = Field(default_factory=list)

    @field_validator("attachments", mode="before")
    @classmethod
    def _parse_attachments(cls, value):
        return AttachmentRef.parse_list(value)

    @property
    def effective_activity_label(self) -> str:
        label = (self.activity_label or "").strip()
        if not label:
            label = (self.activity_type or "").strip()
        return label or "—"


# =============================================================================
# Request bodies
# =============================================================================


class PostMetadataPatch(BaseModel):
    """Mutable post fields, sent on every publish to reconcile the row"""

    is_public: bool
    session_timestamp: Optional[datetime] = None
    title: Optional[str] = None
    duration_seconds: Optional[int] = None
    activity_type: Optional[str] = None
    activity_label: Optional[str] = None
    activity_detail: Optional[str] = None
    instrument_label: Optional[str] = None
    mood: Optional[int] = None
    effort: Optional[int] = None
    notes: Optional[str] = None
    notes_are_private: bool = False

    @classmethod
    def from_payload(cls, payload: PublishPayload) -> "PostMetadataPatch":
        return cls(
            is_public=payload.is_public,
            session_timestamp=payload.session_timestamp,
            title=payload.title,
            duration_seconds=payload.duration_seconds,
            activity_type=payload.activity_type,
            activity_label=payload.activity.label if payload.activity_type else None,
            activity_detail=payload.activity_detail,
            instrument_label=payload.instrument_label,
            mood=payload.mood,
            effort=payload.effort,
            notes=None if payload.notes_are_private else payload.notes,
            notes_are_private=payload.notes_are_private,
        )

    def to_body(self) -> dict:
        body = self.model_dump(mode="json", exclude_none=True, exclude={"notes_are_private"})
        if self.notes_are_private:
            # private notes never leave the device, and stale remote notes are cleared
            body["notes"] = None
        return body


class PostInsert(PostMetadataPatch):
    """Body for creating a post row"""

    id: UUID
    owner_user_id: str
    created_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_payload(cls, payload: PublishPayload, owner_user_id: str) -> "PostInsert":
        patch = PostMetadataPatch.from_payload(payload)
        return cls(id=payload.id, owner_user_id=owner_user_id, **patch.model_dump())


class AttachmentsPatch(BaseModel):
    attachments: List[AttachmentRef]

    def to_body(self) -> dict:
        return self.model_dump(mode="json")


class DirectoryLookupRequest(BaseModel):
    user_ids: List[str]


class DirectorySearchRequest(BaseModel):
    q: str


class DirectoryUpsert(BaseModel):
    user_id: str
    display_name: str
    account_id: Optional[str]
    lookup_enabled: bool
    location: Optional[str]


class AvatarKeyPatch(BaseModel):
    avatar_key: Optional[str]


class SignObjectRequest(BaseModel):
    expiresIn: int
