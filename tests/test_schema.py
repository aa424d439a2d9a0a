"""
Testes para app/activitypub/schema.py

Cobre:
- parse_activity escolhe o modelo pelo `type`
- tipos desconhecidos viram UnknownActivity
- campos obrigatórios ausentes / payload que não é objeto → ValidationError
- coerções: actor/attributedTo embutidos, to/cc como string, tag como dict
- menções e opções de enquete extraídas do objeto
"""

import pytest

from app.activitypub.schema import (
    CreateActivity,
    FollowActivity,
    UndoActivity,
    UnknownActivity,
    object_id,
    parse_activity,
    parse_note,
)
from app.errors import ValidationError

BOB = "https://remote.example/users/bob"
PUBLIC = "https://www.w3.org/ns/activitystreams#Public"


def test_parse_follow():
    activity = parse_activity(
        {"id": f"{BOB}#f/1", "type": "Follow", "actor": BOB, "object": "https://fed.test/users/alice"}
    )

    assert isinstance(activity, FollowActivity)
    assert activity.object == "https://fed.test/users/alice"


def test_parse_embedded_actor_and_string_addressing():
    activity = parse_activity(
        {
            "id": f"{BOB}/statuses/1/activity",
            "type": "Create",
            "actor": {"id": BOB, "type": "Person"},
            "to": PUBLIC,
            "object": {"id": f"{BOB}/statuses/1", "type": "Note"},
        }
    )

    assert isinstance(activity, CreateActivity)
    assert activity.actor == BOB
    assert activity.to == [PUBLIC]
    assert activity.cc == []


def test_parse_undo_with_embedded_object():
    activity = parse_activity(
        {
            "id": f"{BOB}#f/1#undo",
            "type": "Undo",
            "actor": BOB,
            "object": {"id": f"{BOB}#f/1", "type": "Follow"},
        }
    )

    assert isinstance(activity, UndoActivity)
    assert object_id(activity.object) == f"{BOB}#f/1"


def test_unknown_type():
    activity = parse_activity({"id": "x", "type": "Dance", "actor": BOB})

    assert isinstance(activity, UnknownActivity)


@pytest.mark.parametrize(
    "payload",
    [
        [],
        "Follow",
        {"type": "Follow", "actor": BOB, "object": "x"},
        {"id": "x", "type": "Follow", "object": "x"},
        {"id": "x", "type": "Create", "actor": BOB, "object": "https://x/statuses/1"},
    ],
)
def test_invalid_payloads(payload):
    with pytest.raises(ValidationError):
        parse_activity(payload)


def test_object_id():
    assert object_id("https://x/1") == "https://x/1"
    assert object_id({"id": "https://x/1"}) == "https://x/1"
    assert object_id({"type": "Note"}) is None
    assert object_id(None) is None


def test_parse_note_coercions():
    note = parse_note(
        {
            "id": f"{BOB}/statuses/1",
            "type": "Question",
            "attributedTo": {"id": BOB},
            "content": "<p>qual?</p>",
            "inReplyTo": {"id": "https://fed.test/users/alice/statuses/9"},
            "to": [PUBLIC, {"id": f"{BOB}/followers"}],
            "cc": None,
            "tag": {"type": "Mention", "href": "https://fed.test/users/alice"},
            "oneOf": [{"type": "Note", "name": "sim"}, {"type": "Note", "name": "não"}],
        }
    )

    assert note.attributed_to == BOB
    assert note.in_reply_to == "https://fed.test/users/alice/statuses/9"
    assert note.to == [PUBLIC, f"{BOB}/followers"]
    assert note.cc == []
    assert note.mentions == ["https://fed.test/users/alice"]
    assert note.poll_choices == ["sim", "não"]


def test_parse_note_without_poll_or_tags():
    note = parse_note(
        {
            "id": f"{BOB}/statuses/2",
            "type": "Note",
            "attributedTo": BOB,
            "tag": [{"type": "Hashtag", "name": "#x"}, "lixo"],
        }
    )

    assert note.mentions == []
    assert note.poll_choices is None
    assert note.content == ""


def test_parse_note_requires_author():
    with pytest.raises(ValidationError):
        parse_note({"id": f"{BOB}/statuses/3", "type": "Note"})
