"""
docmirror Fetch / Destroy -- reading server copies and deleting records
"""

import asyncio
from datetime import datetime

import pytest

from docmirror.kernel.errors import ErrorCode, MirrorError
from docmirror.kernel.objects import RemoteObject

pytestmark = pytest.mark.asyncio


# ============================================================================
# Fetch
# ============================================================================


class TestFetch:
    async def test_fetch_replaces_local_state(self, client, mock_rest):
        mock_rest.seed("Player", "p1", {"name": "Ann", "tags": ["a"]})
        player = client.create_without_data("Player", "p1")
        player.set("name", "local")

        assert await player.fetch() is player
        assert player.get("name") == "Ann"
        assert player.get("tags") == ["a"]
        assert isinstance(player.created_at, datetime)
        assert not player.dirty()

    async def test_fetch_decodes_pointers(self, client, mock_rest):
        mock_rest.seed("Game", "g1", {"owner": {"__type": "Pointer", "className": "Player", "objectId": "p1"}})
        game = await client.create_without_data("Game", "g1").fetch()
        owner = game.get("owner")
        assert isinstance(owner, RemoteObject)
        assert (owner.class_name, owner.id) == ("Player", "p1")

    async def test_fetch_include(self, client, mock_rest):
        mock_rest.seed("Game", "g1", {})
        await client.create_without_data("Game", "g1").fetch(include=["owner", ["board", "moves"]])
        (request,) = mock_rest.requests_to("GET")
        assert request.body == {"include": "owner,board,moves"}

    async def test_fetch_requires_id(self, client):
        with pytest.raises(MirrorError) as exc_info:
            await client.object("Game").fetch()
        assert exc_info.value.code == ErrorCode.MISSING_OBJECT_ID

    async def test_fetch_missing_record(self, client):
        with pytest.raises(MirrorError) as exc_info:
            await client.create_without_data("Game", "nope").fetch()
        assert exc_info.value.code == ErrorCode.OBJECT_NOT_FOUND

    async def test_fetch_all(self, client, mock_rest):
        mock_rest.seed("Game", "g1", {"n": 1})
        mock_rest.seed("Game", "g2", {"n": 2})
        games = [client.create_without_data("Game", "g1"), client.create_without_data("Game", "g2")]
        assert await client.fetch_all(games) == games
        assert [g.get("n") for g in games] == [1, 2]

    async def test_fetch_all_checks_class_and_ids(self, client):
        with pytest.raises(MirrorError) as exc_info:
            await client.fetch_all([client.create_without_data("Game", "g1"), client.create_without_data("Other", "o")])
        assert exc_info.value.code == ErrorCode.INVALID_CLASS_NAME
        with pytest.raises(MirrorError) as exc_info:
            await client.fetch_all([client.create_without_data("Game", "g1"), client.object("Game")])
        assert exc_info.value.code == ErrorCode.MISSING_OBJECT_ID


# ============================================================================
# Destroy
# ============================================================================


class TestDestroy:
    async def test_destroy_deletes_record(self, client, mock_rest):
        mock_rest.seed("Game", "g1", {})
        game = client.create_without_data("Game", "g1")
        assert await game.destroy() is game
        assert "g1" not in mock_rest.records["Game"]

    async def test_destroy_unsaved_resolves_immediately(self, client, mock_rest):
        assert await client.object("Game").destroy() is None
        assert mock_rest.requests == []

    async def test_destroy_waits_for_save_in_flight(self, client, mock_rest):
        mock_rest.seed("Game", "g1", {})
        game = client.create_without_data("Game", "g1")
        game.set("n", 1)
        saving = game.save()
        destroying = game.destroy()
        await asyncio.gather(saving, destroying)
        assert [r.method for r in mock_rest.requests] == ["PUT", "DELETE"]

    async def test_destroy_missing_record(self, client):
        with pytest.raises(MirrorError) as exc_info:
            await client.create_without_data("Game", "nope").destroy()
        assert exc_info.value.code == ErrorCode.OBJECT_NOT_FOUND
