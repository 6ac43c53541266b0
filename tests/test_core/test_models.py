import pytest
import json
from uuid import UUID, uuid4

from core.models import (
    DEFAULT_ACTIVITY,
    AttachmentKind,
    AttachmentRef,
    BackendPost,
    CoreActivity,
    CustomActivity,
    DirectoryIdentity,
    PostInsert,
    PostMetadataPatch,
    PublishPayload,
    QueuedPublish,
    SessionActivityType,
    parse_activity_choice,
)


class TestActivityChoice:
    """Test activity choice parsing and serialization."""

    def test_core_round_trip(self):
        choice = parse_activity_choice("core:3")
        assert choice == CoreActivity(SessionActivityType.LESSON)
        assert choice.label == "Lesson"
        assert choice.serialize() == "core:3"

    def test_custom(self):
        choice = parse_activity_choice("custom:Ear training")
        assert choice == CustomActivity("Ear training")
        assert choice.label == "Ear training"
        assert choice.serialize() == "custom:Ear training"

    @pytest.mark.parametrize("raw", [None, "", "core:99", "core:x", "custom:  ", "banana"])
    def test_invalid_falls_back_to_practice(self, raw):
        assert parse_activity_choice(raw) == DEFAULT_ACTIVITY
        assert parse_activity_choice(raw).serialize() == "core:0"


class TestPublishPayloadMerge:
    """Test the queue merge rule."""

    def test_stub_has_no_metadata(self, post_id):
        stub = PublishPayload.stub(post_id)
        assert stub.has_metadata is False
        assert stub.is_public is True

    def test_notes_private_flag_counts_as_metadata(self, post_id):
        assert PublishPayload(id=post_id, notes_are_private=True).has_metadata is True

    def test_merge_is_idempotent(self, sample_payload):
        merged = sample_payload.merged_with(sample_payload)
        assert merged == sample_payload

    def test_stub_does_not_regress_visibility(self, sample_payload):
        private = sample_payload.model_copy(update={"is_public": False})
        merged = private.merged_with(PublishPayload.stub(private.id))
        assert merged.is_public is False
        assert merged.title == "Scales warmup"

    def test_stub_does_not_wipe_fields(self, sample_payload):
        merged = sample_payload.merged_with(PublishPayload.stub(sample_payload.id))
        assert merged == sample_payload

    def test_explicit_private_wins(self, sample_payload):
        new = PublishPayload(id=sample_payload.id, title="New title", is_public=False)
        merged = sample_payload.merged_with(new)
        assert merged.is_public is False
        assert merged.title == "New title"

    def test_metadata_makes_public(self, post_id):
        old = PublishPayload(id=post_id, is_public=False, title="Old")
        merged = old.merged_with(PublishPayload(id=post_id, mood=5))
        assert merged.is_public is True
        assert merged.mood == 5
        assert merged.title == "Old"

    def test_notes_privacy_follows_new_notes_only(self, sample_payload):
        flag_only = PublishPayload(id=sample_payload.id, notes_are_private=True)
        merged = sample_payload.merged_with(flag_only)
        assert merged.notes == "Felt good"
        assert merged.notes_are_private is False

        with_notes = PublishPayload(id=sample_payload.id, notes="secret", notes_are_private=True)
        merged = sample_payload.merged_with(with_notes)
        assert merged.notes == "secret"
        assert merged.notes_are_private is True


class TestQueuedPublish:
    """Test queue bookkeeping fields."""

    def test_bookkeeping_preserved_across_merge(self, sample_payload):
        first = QueuedPublish.from_payload(sample_payload).model_copy(
            update={"attempts": 2, "last_error": "HTTP 500"}
        )
        again = QueuedPublish.from_payload(sample_payload, previous=first)
        assert again.attempts == 2
        assert again.last_error == "HTTP 500"
        assert again.queued_at == first.queued_at

    def test_to_payload_drops_bookkeeping(self, sample_payload):
        queued = QueuedPublish.from_payload(sample_payload)
        payload = queued.to_payload()
        assert type(payload) is PublishPayload
        assert payload == sample_payload


class TestAttachmentRef:
    """Test attachment reference parsing."""

    def test_parse_list_from_json_string(self):
        raw = json.dumps(
            [
                {"kind": "image", "bucket": "", "path": "u/p/a.jpg"},
                {"kind": "hologram", "path": "u/p/b.bin"},
                {"kind": "audio", "path": ""},
                {"kind": "AUDIO", "bucket": "media", "path": "u/p/c.m4a", "display_name": "Take 1"},
            ]
        )
        refs = AttachmentRef.parse_list(raw)

        assert [ref.path for ref in refs] == ["u/p/a.jpg", "u/p/c.m4a"]
        assert refs[0].bucket == "attachments"
        assert refs[1].kind is AttachmentKind.AUDIO
        assert refs[1].bucket == "media"

    def test_parse_list_from_bytes(self):
        raw = b'[{"kind": "video", "path": "u/p/v.mov"}]'
        assert AttachmentRef.parse_list(raw)[0].kind is AttachmentKind.VIDEO

    @pytest.mark.parametrize("raw", [None, "not json", {"kind": "image"}, 42])
    def test_parse_list_garbage(self, raw):
        assert AttachmentRef.parse_list(raw) == []


class TestBackendPost:
    """Test backend post decoding."""

    def test_attachments_decoded_and_extra_ignored(self):
        post = BackendPost.model_validate(
            {
                "id": str(uuid4()),
                "owner_user_id": "u1",
                "attachments": '[{"kind": "image", "path": "u1/p/a.jpg"}]',
                "unexpected_column": 1,
            }
        )
        assert len(post.attachments) == 1

    def test_effective_activity_label(self):
        post = BackendPost(id=uuid4(), activity_type="core:1")
        assert post.effective_activity_label == "core:1"
        assert BackendPost(id=uuid4(), activity_label="Rehearsal").effective_activity_label == "Rehearsal"
        assert BackendPost(id=uuid4()).effective_activity_label == "—"


class TestRequestBodies:
    """Test request body construction."""

    def test_metadata_patch_body(self, sample_payload):
        body = PostMetadataPatch.from_payload(sample_payload).to_body()
        assert body["is_public"] is True
        assert body["title"] == "Scales warmup"
        assert body["activity_label"] == "Practice"
        assert body["notes"] == "Felt good"
        assert "notes_are_private" not in body
        assert "session_timestamp" not in body

    def test_private_notes_are_cleared_remotely(self, sample_payload):
        payload = sample_payload.model_copy(update={"notes_are_private": True})
        body = PostMetadataPatch.from_payload(payload).to_body()
        assert body["notes"] is None

    def test_stub_patch_only_carries_visibility(self, post_id):
        body = PostMetadataPatch.from_payload(PublishPayload.stub(post_id)).to_body()
        assert body == {"is_public": True}

    def test_insert_body(self, sample_payload, owner_id):
        body = PostInsert.from_payload(sample_payload, owner_id).to_body()
        assert body["id"] == str(sample_payload.id)
        assert body["owner_user_id"] == owner_id
        assert "created_at" in body

    def test_directory_identity_alias(self):
        identity = DirectoryIdentity.model_validate({"user_id": "u1", "account_id": "ann"})
        assert identity.account_handle == "ann"
        assert DirectoryIdentity(user_id="u1", account_handle="bo").account_handle == "bo"
