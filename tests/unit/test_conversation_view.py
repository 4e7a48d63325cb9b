"""Unit tests for the client-side conversation merge."""

from datetime import datetime, timedelta, timezone

from rendezvous.services.conversation_view import ConversationView
from rendezvous.services.events import MessageAppended


BASE = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _message(message_id: int, offset: int, match_id: int = 1) -> MessageAppended:
    return MessageAppended(id=message_id, match_id=match_id, sender_id="alice",
                           body=str(message_id), created_at=BASE + timedelta(seconds=offset))


def test_duplicates_are_ignored():
    view = ConversationView(1)

    assert view.apply(_message(1, 0)) is True
    assert view.apply(_message(1, 0)) is False
    assert len(view) == 1


def test_out_of_order_pushes_are_sorted():
    view = ConversationView(1)

    view.extend([_message(3, 2), _message(1, 0), _message(2, 1)])

    assert [m.id for m in view.messages] == [1, 2, 3]


def test_id_breaks_timestamp_ties():
    view = ConversationView(1)

    view.extend([_message(5, 0), _message(4, 0)])

    assert [m.id for m in view.messages] == [4, 5]


def test_other_conversations_are_ignored():
    view = ConversationView(1)

    assert view.apply(_message(1, 0, match_id=2)) is False
    assert len(view) == 0


def test_checkpoint_is_last_message_cursor():
    view = ConversationView(1)
    assert view.checkpoint == (None, None)

    view.extend([_message(2, 5), _message(1, 1)])

    assert view.checkpoint == (BASE + timedelta(seconds=5), 2)


def test_history_and_pushes_merge_without_gaps_or_duplicates():
    view = ConversationView(1)
    # Push arrived before the history fetch that also contains it
    view.apply(_message(3, 2))

    added = view.extend([_message(1, 0), _message(2, 1), _message(3, 2)])

    assert added == 2
    assert [m.id for m in view.messages] == [1, 2, 3]
