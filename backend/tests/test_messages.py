# tests for the message log
# append, gap-free cursor reads, ai context building, edits and soft deletes

import pytest
from pymongo.errors import PyMongoError

from therapy_chat.errors import AccessDeniedError, ValidationError
from therapy_chat.models.message import AISender, SubjectSender, SystemSender, TherapistSender
from tests.conftest import ADMIN, PATIENT, PATIENT_2, THERAPIST, THERAPIST_2


@pytest.fixture
async def conversation(services):
    conversation, _ = await services.conversations.get_or_create_for_patient(PATIENT)
    return conversation


class TestAppend:
    """roles derive from the sender variant, ids and seq are monotonic"""

    async def test_roles_follow_sender(self, services, conversation):
        cid = conversation["_id"]
        patient_msg = await services.messages.append(cid, SubjectSender(id=PATIENT["id"]), "hi")
        therapist_msg = await services.messages.append(cid, TherapistSender(id=THERAPIST["id"]), "hello")
        ai_msg = await services.messages.append(cid, AISender(), "hey there")
        system_msg = await services.messages.append(cid, SystemSender(), "welcome")
        assert patient_msg["role"] == "user"
        assert therapist_msg["role"] == "user"
        assert ai_msg["role"] == "assistant"
        assert system_msg["role"] == "system"
        assert therapist_msg["sender"] == {"type": "therapist", "id": THERAPIST["id"]}

    async def test_ids_and_seq_increase(self, services, conversation):
        cid = conversation["_id"]
        first = await services.messages.append(cid, SubjectSender(id=PATIENT["id"]), "one")
        second = await services.messages.append(cid, SubjectSender(id=PATIENT["id"]), "two")
        assert second["_id"] > first["_id"]
        assert second["seq"] == first["seq"] + 1
        assert await services.messages.latest_id(cid) == second["_id"]

    async def test_sender_marks_own_message_seen(self, services, conversation):
        message = await services.messages.append(conversation["_id"], SubjectSender(id=PATIENT["id"]), "hi")
        assert message["seen_by"] == [PATIENT["id"]]

    async def test_append_to_missing_conversation(self, services):
        with pytest.raises(ValidationError):
            await services.messages.append(999, SubjectSender(id=PATIENT["id"]), "hi")

    async def test_failed_insert_fills_hole(self, services, conversation, mock_db):
        """a failed insert leaves a deleted placeholder so readers are not stalled"""
        cid = conversation["_id"]
        first = await services.messages.append(cid, SubjectSender(id=PATIENT["id"]), "one")

        original_insert = mock_db.messages.insert_one
        failures = []

        async def failing_insert(doc):
            if not failures and not doc.get("placeholder"):
                failures.append(doc["_id"])
                raise PyMongoError("write failed")
            return await original_insert(doc)

        mock_db.messages.insert_one = failing_insert
        with pytest.raises(PyMongoError):
            await services.messages.append(cid, SubjectSender(id=PATIENT["id"]), "lost")
        mock_db.messages.insert_one = original_insert

        third = await services.messages.append(cid, SubjectSender(id=PATIENT["id"]), "three")
        visible, cursor = await services.messages.list_after(cid, first["_id"])
        assert [m["content"] for m in visible] == ["three"]
        assert cursor == third["_id"]


class TestListAfter:
    """cursor reads in log order"""

    async def test_reads_everything_without_cursor(self, services, conversation):
        cid = conversation["_id"]
        for text in ("a", "b", "c"):
            await services.messages.append(cid, SubjectSender(id=PATIENT["id"]), text)
        visible, cursor = await services.messages.list_after(cid)
        assert [m["content"] for m in visible] == ["a", "b", "c"]
        assert cursor == visible[-1]["_id"]

    async def test_reads_only_after_cursor(self, services, conversation):
        cid = conversation["_id"]
        first = await services.messages.append(cid, SubjectSender(id=PATIENT["id"]), "a")
        await services.messages.append(cid, SubjectSender(id=PATIENT["id"]), "b")
        visible, _ = await services.messages.list_after(cid, first["_id"])
        assert [m["content"] for m in visible] == ["b"]

    async def test_empty_read_keeps_cursor(self, services, conversation):
        cid = conversation["_id"]
        only = await services.messages.append(cid, SubjectSender(id=PATIENT["id"]), "a")
        visible, cursor = await services.messages.list_after(cid, only["_id"])
        assert visible == []
        assert cursor == only["_id"]

    async def test_stops_at_seq_gap(self, services, conversation, mock_db):
        """a reserved seq whose insert is still in flight blocks later messages"""
        cid = conversation["_id"]
        first = await services.messages.append(cid, SubjectSender(id=PATIENT["id"]), "a")
        # reserve seq 2 without inserting it
        await mock_db.conversations.update_one({"_id": cid}, {"$inc": {"message_seq": 1}})
        await services.messages.append(cid, SubjectSender(id=PATIENT["id"]), "c")
        visible, cursor = await services.messages.list_after(cid, first["_id"])
        assert visible == []
        assert cursor == first["_id"]

    async def test_deleted_messages_skipped_but_advance_cursor(self, services, conversation):
        cid = conversation["_id"]
        message = await services.messages.append(cid, TherapistSender(id=THERAPIST["id"]), "oops")
        await services.messages.soft_delete(message["_id"], THERAPIST)
        visible, cursor = await services.messages.list_after(cid)
        assert visible == []
        assert cursor == message["_id"]

    async def test_unknown_cursor_rejected(self, services, conversation):
        with pytest.raises(ValidationError, match="Unknown message cursor"):
            await services.messages.list_after(conversation["_id"], 12345)


class TestAIContext:
    """history sent to the model"""

    async def test_therapist_messages_prefixed(self, services, conversation):
        cid = conversation["_id"]
        await services.messages.append(cid, SubjectSender(id=PATIENT["id"]), "I feel anxious")
        await services.messages.append(cid, TherapistSender(id=THERAPIST["id"]), "Let's breathe together")
        await services.messages.append(cid, AISender(), "That sounds hard")
        context = await services.messages.build_ai_context(cid, "be kind")
        assert context[0] == {"role": "system", "content": "be kind"}
        assert context[1] == {"role": "user", "content": "I feel anxious"}
        assert context[2] == {"role": "user", "content": "[Therapist]: Let's breathe together"}
        assert context[3] == {"role": "assistant", "content": "That sounds hard"}

    async def test_deleted_messages_excluded(self, services, conversation):
        cid = conversation["_id"]
        message = await services.messages.append(cid, TherapistSender(id=THERAPIST["id"]), "wrong chat")
        await services.messages.soft_delete(message["_id"], THERAPIST)
        context = await services.messages.build_ai_context(cid)
        assert context == []

    async def test_window_keeps_newest(self, mock_db, fake_gateway, test_settings):
        from therapy_chat.services.registry import build_services

        bundle = build_services(mock_db, fake_gateway, test_settings.model_copy(update={"AI_CONTEXT_WINDOW": 2}))
        conversation, _ = await bundle.conversations.get_or_create_for_patient(PATIENT)
        for text in ("one", "two", "three"):
            await bundle.messages.append(conversation["_id"], SubjectSender(id=PATIENT["id"]), text)
        context = await bundle.messages.build_ai_context(conversation["_id"])
        assert [m["content"] for m in context] == ["two", "three"]


class TestEditAndDelete:
    """only the authoring therapist (or an admin) may change a message"""

    async def test_edit_keeps_history(self, services, conversation):
        message = await services.messages.append(conversation["_id"], TherapistSender(id=THERAPIST["id"]), "draft text")
        updated = await services.messages.edit(message["_id"], THERAPIST, "final text")
        assert updated["content"] == "final text"
        assert updated["is_edited"] is True
        assert updated["edit_history"][0]["content"] == "draft text"
        assert updated["role"] == "user"
        assert updated["sender"]["type"] == "therapist"

    async def test_other_therapist_cannot_edit(self, services, conversation):
        message = await services.messages.append(conversation["_id"], TherapistSender(id=THERAPIST["id"]), "text")
        with pytest.raises(AccessDeniedError):
            await services.messages.edit(message["_id"], THERAPIST_2, "hijack")

    async def test_patient_message_not_editable_by_therapist(self, services, conversation):
        message = await services.messages.append(conversation["_id"], SubjectSender(id=PATIENT["id"]), "mine")
        with pytest.raises(AccessDeniedError):
            await services.messages.edit(message["_id"], THERAPIST, "changed")

    async def test_admin_can_delete(self, services, conversation):
        message = await services.messages.append(conversation["_id"], TherapistSender(id=THERAPIST["id"]), "text")
        deleted = await services.messages.soft_delete(message["_id"], ADMIN)
        assert deleted["is_deleted"] is True
        assert deleted["deleted_by"] == ADMIN["id"]

    async def test_empty_edit_rejected(self, services, conversation):
        message = await services.messages.append(conversation["_id"], TherapistSender(id=THERAPIST["id"]), "text")
        with pytest.raises(ValidationError):
            await services.messages.edit(message["_id"], THERAPIST, "   ")


class TestMessageRoutes:
    """therapist edit/delete endpoints"""

    async def test_edit_route(self, services, conversation, therapist_client):
        message = await services.messages.append(conversation["_id"], TherapistSender(id=THERAPIST["id"]), "helo")
        resp = await therapist_client.patch(
            f"/conversations/{conversation['_id']}/messages/{message['_id']}",
            json={"content": "hello"},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["content"] == "hello"
        assert data["isEdited"] is True
        assert data["sender"]["label"] == "Dr. Sarah Chen"

    async def test_delete_route(self, services, conversation, therapist_client):
        message = await services.messages.append(conversation["_id"], TherapistSender(id=THERAPIST["id"]), "oops")
        resp = await therapist_client.delete(f"/conversations/{conversation['_id']}/messages/{message['_id']}")
        assert resp.status_code == 200
        resp = await therapist_client.get(f"/conversations/{conversation['_id']}/messages")
        assert resp.json()["messages"] == []

    async def test_message_from_other_conversation_denied(self, services, conversation, therapist_client):
        other = await services.conversations.initialize_for_patient(THERAPIST, PATIENT_2["id"])
        message = await services.messages.append(other["_id"], TherapistSender(id=THERAPIST["id"]), "elsewhere")
        resp = await therapist_client.patch(
            f"/conversations/{conversation['_id']}/messages/{message['_id']}",
            json={"content": "moved"},
        )
        assert resp.status_code == 403
