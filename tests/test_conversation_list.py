import asyncio
import logging

from itemchat.realtime.bus import NoopBus
from itemchat.services import build_services


async def test_most_recent_first(services):
    c1 = (await services.directory.resolve_or_create("item-bike", "u1", "u2")).conversation_id
    c2 = (await services.directory.resolve_or_create("item-lamp", "u3", "u1")).conversation_id

    await services.store.append(c2, "u1", "is the lamp still there?")
    # stored timestamps have millisecond resolution
    await asyncio.sleep(0.01)
    await services.store.append(c1, "u1", "is the bike still there?")

    summaries = await services.projector.list_for_user("u1")
    assert [s.conversation_id for s in summaries] == [c1, c2]


async def test_summary_fields(services):
    c1 = (await services.directory.resolve_or_create("item-bike", "u1", "u2")).conversation_id

    (mine,) = await services.projector.list_for_user("u1")
    assert mine.conversation_id == c1
    assert mine.counterpart_id == "u2"
    assert mine.counterpart_name == "Brook"
    assert mine.item_title == "Blue bike"

    (theirs,) = await services.projector.list_for_user("u2")
    assert theirs.counterpart_id == "u1"
    assert theirs.counterpart_name == "Ada"


async def test_unknown_profile_has_no_name(services):
    await services.directory.resolve_or_create("item-bike", "u1", "ghost")
    (summary,) = await services.projector.list_for_user("ghost")
    assert summary.counterpart_id == "u1"
    (summary,) = await services.projector.list_for_user("u1")
    assert summary.counterpart_name is None


async def test_views_recomputed_after_activity(services):
    assert await services.projector.list_for_user("u2") == []

    c1 = (await services.directory.resolve_or_create("item-bike", "u1", "u2")).conversation_id
    assert [s.conversation_id for s in await services.projector.list_for_user("u2")] == [c1]

    c3 = (await services.directory.resolve_or_create("item-lamp", "u2", "u3")).conversation_id
    await asyncio.sleep(0.01)
    await services.store.append(c1, "u1", "ping")

    assert [s.conversation_id for s in await services.projector.list_for_user("u2")] == [c1, c3]
    assert [s.conversation_id for s in await services.projector.list_for_user("u3")] == [c3]


async def test_cached_view_served_until_invalidated(services, db):
    await services.directory.resolve_or_create("item-bike", "u1", "u2")
    first = await services.projector.list_for_user("u1")

    # writes behind the projector's back are not seen until invalidation
    await db["items"].update_one({"_id": "item-bike"}, {"$set": {"title": "Red bike"}})
    assert (await services.projector.list_for_user("u1"))[0].item_title == first[0].item_title

    services.projector.invalidate("u1")
    assert (await services.projector.list_for_user("u1"))[0].item_title == "Red bike"


async def test_list_limit_keeps_most_recent_and_warns(db, settings, caplog):
    chat = build_services(db, settings.model_copy(update={"CONVERSATION_LIST_LIMIT": 1}), NoopBus())
    await chat.directory.resolve_or_create("item-bike", "u1", "u2")
    await asyncio.sleep(0.01)
    newest = (await chat.directory.resolve_or_create("item-lamp", "u1", "u3")).conversation_id

    with caplog.at_level(logging.WARNING, logger="itemchat.services.conversation_list"):
        summaries = await chat.projector.list_for_user("u1")

    assert [s.conversation_id for s in summaries] == [newest]
    assert "hit the limit of 1" in caplog.text
