"""
docmirror Save -- single-object saves against the in-memory backend

Covers the save lifecycle of one object:
  - create and update bodies, server timestamps, id assignment
  - edits made while a save is in flight land in the next save
  - a failed save folds its changes back into the current batch
  - saves of the same object leave in order
  - unsaved children and files are saved first
"""

import asyncio

import pytest

from docmirror.kernel.errors import ErrorCode, MirrorError, UnsavedReferenceError
from docmirror.kernel.ops import IncrementOp
from docmirror.kernel.types import ObjectIdentity

pytestmark = pytest.mark.asyncio


def _rejects(method):
    return lambda m, path, body: m == method


# ============================================================================
# Create and update
# ============================================================================


class TestCreate:
    async def test_create_assigns_id_and_timestamps(self, client, mock_rest):
        obj = client.object("GameScore", {"score": 10, "player": "ann"})
        saved = await obj.save()

        assert saved is obj
        assert obj.id in mock_rest.records["GameScore"]
        assert obj.created_at is not None
        assert obj.updated_at == obj.created_at
        assert obj.get("score") == 10
        assert not obj.dirty()
        assert not obj.existed()

        (request,) = mock_rest.requests_to("POST", "classes/GameScore")
        assert request.body == {"score": 10, "player": "ann"}

    async def test_save_with_attributes(self, client, mock_rest):
        obj = client.object("GameScore")
        await obj.save({"score": 3})
        assert mock_rest.records["GameScore"][obj.id]["score"] == 3

    async def test_save_with_invalid_attributes_raises_before_sending(self, client, mock_rest):
        obj = client.object("GameScore")
        with pytest.raises(MirrorError) as exc_info:
            obj.save({"bad key": 1})
        assert exc_info.value.code == ErrorCode.INVALID_KEY_NAME
        assert mock_rest.requests == []


class TestUpdate:
    async def test_update_sends_only_changes(self, client, mock_rest):
        mock_rest.seed("GameScore", "g1", {"score": 5, "player": "ann"})
        obj = client.create_without_data("GameScore", "g1")
        obj.increment("score", 5)
        await obj.save()

        (request,) = mock_rest.requests_to("PUT")
        assert request.path == "classes/GameScore/g1"
        assert request.body == {"score": {"__op": "Increment", "amount": 5}}
        assert obj.get("score") == 10
        assert obj.existed()
        assert not obj.dirty()

    async def test_unset_removes_field(self, client, mock_rest):
        mock_rest.seed("GameScore", "g1", {"score": 5, "note": "x"})
        obj = await client.create_without_data("GameScore", "g1").fetch()
        obj.unset("note")
        await obj.save()
        assert "note" not in mock_rest.records["GameScore"]["g1"]
        assert obj.get("note") is None

    async def test_in_place_edit_is_saved(self, client, mock_rest):
        mock_rest.seed("Post", "p1", {"tags": ["a"]})
        post = await client.create_without_data("Post", "p1").fetch()
        post.get("tags").append("b")
        await post.save()
        assert mock_rest.records["Post"]["p1"]["tags"] == ["a", "b"]
        assert not post.dirty()

    async def test_nested_field_update(self, client, mock_rest):
        mock_rest.seed("Player", "p1", {"stats": {"wins": 1, "losses": 0}})
        player = await client.create_without_data("Player", "p1").fetch()
        player.increment("stats.wins")
        await player.save()
        assert mock_rest.records["Player"]["p1"]["stats"] == {"wins": 2, "losses": 0}
        assert player.get("stats") == {"wins": 2, "losses": 0}


# ============================================================================
# In-flight edits and failures
# ============================================================================


class TestInFlight:
    async def test_edit_during_save_goes_to_next_batch(self, client, mock_rest, drain):
        mock_rest.seed("Counter", "c1", {"x": 5})
        obj = await client.create_without_data("Counter", "c1").fetch()
        mock_rest.hold()
        obj.increment("x", 2)
        pending_save = obj.save()
        await drain()
        assert len(mock_rest.requests_to("PUT")) == 1

        obj.increment("x", 3)
        assert obj.get("x") == 10
        assert obj.op("x") == IncrementOp(3)

        mock_rest.release()
        await pending_save
        assert mock_rest.requests_to("PUT")[0].body == {"x": {"__op": "Increment", "amount": 2}}
        assert obj.get("x") == 10
        assert obj.dirty("x")

        await obj.save()
        assert mock_rest.records["Counter"]["c1"]["x"] == 10
        assert not obj.dirty()

    async def test_failed_save_merges_changes_back(self, client, mock_rest):
        mock_rest.seed("Counter", "c1", {"x": 5})
        obj = await client.create_without_data("Counter", "c1").fetch()
        mock_rest.reject_when(_rejects("PUT"), once=True)
        obj.increment("x", 2)
        failed = obj.save()
        obj.increment("x", 3)

        with pytest.raises(MirrorError, match="Injected failure"):
            await failed
        assert obj.op("x") == IncrementOp(5)
        assert len(obj._get_pending_ops()) == 1
        assert obj.get("x") == 10

        await obj.save()
        assert mock_rest.records["Counter"]["c1"]["x"] == 10

    async def test_container_edit_during_save_waits_for_next_save(self, client, mock_rest, drain):
        mock_rest.seed("Post", "p1", {"tags": ["a"]})
        post = await client.create_without_data("Post", "p1").fetch()
        mock_rest.hold()
        post.set("x", 1)
        pending_save = post.save()
        await drain()
        post.add("tags", "b")

        mock_rest.release()
        await pending_save
        assert mock_rest.requests_to("PUT")[0].body == {"x": 1}
        assert mock_rest.records["Post"]["p1"]["tags"] == ["a"]
        assert post.dirty("tags")

        await post.save()
        assert mock_rest.requests_to("PUT")[1].body == {"tags": {"__op": "Add", "objects": ["b"]}}
        assert mock_rest.records["Post"]["p1"]["tags"] == ["a", "b"]
        assert post.get("tags") == ["a", "b"]
        assert not post.dirty()

    async def test_failed_create_keeps_object_new(self, client, mock_rest):
        mock_rest.reject_when(_rejects("POST"), code=ErrorCode.VALIDATION_ERROR, once=True)
        obj = client.object("Item", {"a": 1})
        with pytest.raises(MirrorError) as exc_info:
            await obj.save()
        assert exc_info.value.code == ErrorCode.VALIDATION_ERROR
        assert obj.id is None
        assert obj.dirty_keys() == ["a"]

        await obj.save()
        assert obj.id is not None

    async def test_saves_of_one_object_leave_in_order(self, client, mock_rest):
        obj = client.object("Item", {"a": 1})
        first = obj.save()
        obj.set("b", 2)
        second = obj.save()
        await asyncio.gather(first, second)

        assert [r.method for r in mock_rest.requests] == ["POST", "PUT"]
        update = mock_rest.requests[1]
        assert update.path == f"classes/Item/{obj.id}"
        assert update.body == {"b": 2}
        record = mock_rest.records["Item"][obj.id]
        assert (record["a"], record["b"]) == (1, 2)

    async def test_failure_does_not_block_next_save(self, client, mock_rest):
        mock_rest.seed("Item", "i1", {})
        obj = client.create_without_data("Item", "i1")
        mock_rest.reject_when(_rejects("PUT"), once=True)
        obj.set("a", 1)
        first = obj.save()
        second = obj.save()
        results = await asyncio.gather(first, second, return_exceptions=True)
        assert isinstance(results[0], MirrorError)
        assert results[1] is obj
        assert mock_rest.requests_to("PUT")[1].body == {"a": 1}


# ============================================================================
# Identity after save
# ============================================================================


class TestIdMigration:
    async def test_single_instance_handles_share_saved_state(self, client):
        obj = client.object("Item", {"a": 1})
        await obj.save()
        other = client.create_without_data("Item", obj.id)
        assert other.get("a") == 1
        other.set("a", 2)
        assert obj.get("a") == 2

    async def test_unique_instance_handles_stay_apart(self, unique_client):
        obj = unique_client.object("Item", {"a": 1})
        await obj.save()
        other = unique_client.create_without_data("Item", obj.id)
        assert obj.get("a") == 1
        assert other.get("a") is None

    async def test_local_id_reused_until_saved(self, client):
        obj = client.object("Item")
        local_id = obj._get_id()
        assert obj._get_id() == local_id
        await obj.save()
        assert obj._get_id() == obj.id != local_id

    async def test_state_rekeyed_from_local_id(self, client):
        obj = client.object("Item", {"a": 1})
        temp_id = obj._get_id()
        assert client.state.get_state(ObjectIdentity("Item", temp_id)) is not None

        await obj.save()
        assert client.state.get_state(ObjectIdentity("Item", temp_id)) is None
        saved_state = client.state.get_state(ObjectIdentity("Item", obj.id))
        assert saved_state is not None
        assert saved_state.server_data["a"] == 1


# ============================================================================
# Cascading saves
# ============================================================================


class TestCascade:
    async def test_unsaved_child_saved_first(self, client, mock_rest):
        child = client.object("Child", {"n": 1})
        parent = client.object("Parent", {"child": child})
        await parent.save()

        assert child.id is not None
        assert [r.path for r in mock_rest.requests] == ["batch", "classes/Parent"]
        assert mock_rest.requests[1].body["child"] == {
            "__type": "Pointer",
            "className": "Child",
            "objectId": child.id,
        }
        assert not child.dirty()

    async def test_unsaved_file_uploaded_first(self, client, mock_rest):
        attachment = client.file("notes.txt", b"hello", "text/plain")
        doc = client.object("Doc", {"attachment": attachment})
        await doc.save()

        assert attachment.url is not None
        assert [r.path for r in mock_rest.requests] == ["files/notes.txt", "classes/Doc"]
        assert mock_rest.requests[1].body["attachment"] == {
            "__type": "File",
            "name": attachment.name,
            "url": attachment.url,
        }

    async def test_unsaved_child_holding_unsaved_file(self, client, mock_rest):
        attachment = client.file("scan.png", b"png")
        child = client.object("Child", {"scan": attachment})
        parent = client.object("Parent", {"child": child})
        await parent.save()

        assert attachment.url is not None
        assert child.id is not None and parent.id is not None
        assert [r.path for r in mock_rest.requests] == ["files/scan.png", "batch", "classes/Parent"]
        (batch,) = mock_rest.requests_to("POST", "batch")
        assert batch.body["requests"][0]["body"]["scan"]["url"] == attachment.url

    async def test_without_cascade_unsaved_child_fails(self, client, mock_rest):
        child = client.object("Child")
        parent = client.object("Parent", {"child": child})
        with pytest.raises(UnsavedReferenceError):
            await parent.save(cascade_save=False)
        assert mock_rest.requests == []
        assert parent.dirty_keys() == ["child"]

    async def test_deep_unsaved_child_rejected(self, client, mock_rest):
        grandchild = client.object("Grandchild")
        child = client.object("Child", {"next": grandchild})
        parent = client.object("Parent", {"child": child})
        with pytest.raises(UnsavedReferenceError):
            parent.save()
        assert mock_rest.requests == []


# ============================================================================
# Files
# ============================================================================


class TestFiles:
    async def test_concurrent_saves_share_one_upload(self, client, mock_rest):
        attachment = client.file("a.txt", b"hello", "text/plain")
        first, second = await asyncio.gather(attachment.save(), attachment.save())

        assert first is second is attachment
        (upload,) = mock_rest.requests_to("POST", "files/")
        assert upload.body == {"base64": "aGVsbG8=", "_ContentType": "text/plain"}
        assert attachment.url.endswith(attachment.name)

    async def test_failed_upload_can_be_retried(self, client, mock_rest):
        mock_rest.reject_when(lambda m, path, body: path.startswith("files/"), once=True)
        attachment = client.file("a.txt", "text data")
        with pytest.raises(MirrorError):
            await attachment.save()
        await attachment.save()
        assert attachment.url is not None

    async def test_file_without_data(self, client):
        with pytest.raises(MirrorError) as exc_info:
            await client.file("a.txt").save()
        assert exc_info.value.code == ErrorCode.FILE_READ_ERROR

    async def test_file_name_required(self, client):
        with pytest.raises(MirrorError) as exc_info:
            client.file("")
        assert exc_info.value.code == ErrorCode.INVALID_FILE_NAME
