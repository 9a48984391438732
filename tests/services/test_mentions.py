import pytest

from forum_stage.services.mentions import extract_mention_handles, resolve_mention_recipients


@pytest.mark.parametrize(
    ("body", "expected"),
    [
        ("hi @Alice", ["alice"]),
        ("@bob @carol @BOB", ["bob", "carol"]),
        ("email me at me@example.com", ["example.com"]),
        ("@ab is too short", []),
        ("@first.last_name-1 ok", ["first.last_name-1"]),
        ("", []),
    ],
)
def test_extract_mention_handles(body, expected):
    assert extract_mention_handles(body) == expected


def test_handles_are_capped_at_twenty_characters():
    assert extract_mention_handles("@" + "a" * 25) == ["a" * 20]


async def test_resolve_keeps_mention_order_and_skips_unknown(sessions, users):
    async with sessions() as session:
        recipients = await resolve_mention_recipients(
            session, ["carol", "ghost", "alice"], exclude_user_id=None
        )
    assert [user.handle for user in recipients] == ["carol", "alice"]


async def test_resolve_can_exclude_the_actor(sessions, users):
    async with sessions() as session:
        recipients = await resolve_mention_recipients(
            session, ["alice", "bob"], exclude_user_id=users["bob"].id
        )
    assert [user.handle for user in recipients] == ["alice"]


async def test_resolve_empty(sessions):
    async with sessions() as session:
        assert await resolve_mention_recipients(session, []) == []
