# tests for the conversation state machine
# lifecycle, group resolution, status/mode/risk transitions, ai toggle and blocking

import pytest

from therapy_chat.errors import AccessDeniedError, NoAccessibleGroupError, ValidationError
from therapy_chat.models.enums import RiskLevel
from therapy_chat.services.conversation_service import ai_active
from tests.conftest import (
    ADMIN,
    ANXIETY_GROUP,
    MOOD_GROUP,
    MULTI_GROUP_PATIENT,
    PATIENT,
    PATIENT_2,
    THERAPIST,
    THERAPIST_2,
    UNGROUPED_PATIENT,
)


class TestGetOrCreate:
    """lazy creation and the one-open-conversation rule"""

    async def test_creates_conversation_with_defaults(self, services):
        conversation, created = await services.conversations.get_or_create_for_patient(PATIENT)
        assert created is True
        assert conversation["patient_id"] == PATIENT["id"]
        assert conversation["group_id"] == ANXIETY_GROUP
        assert conversation["status"] == "active"
        assert conversation["mode"] == "ai_hybrid"
        assert conversation["risk_level"] == "low"
        assert conversation["ai_enabled"] is True
        assert conversation["blocked"] is False

    async def test_returns_existing_open_conversation(self, services):
        first, _ = await services.conversations.get_or_create_for_patient(PATIENT)
        second, created = await services.conversations.get_or_create_for_patient(PATIENT)
        assert created is False
        assert second["_id"] == first["_id"]

    async def test_creation_is_audited(self, services, mock_db):
        conversation, _ = await services.conversations.get_or_create_for_patient(PATIENT)
        entries = await mock_db.transactions.find({"entry_id": conversation["_id"]}).to_list(length=10)
        assert [e["description"] for e in entries] == ["Conversation created"]

    async def test_concurrent_insert_returns_winner(self, services, mock_db):
        """a second open row for the patient is rejected by the partial unique index"""
        winner, _ = await services.conversations.get_or_create_for_patient(PATIENT)
        original = services.conversations.get_open_for_patient
        calls = []

        async def miss_first_time(patient_id):
            calls.append(patient_id)
            if len(calls) == 1:
                return None
            return await original(patient_id)

        services.conversations.get_open_for_patient = miss_first_time
        conversation, created = await services.conversations.get_or_create_for_patient(PATIENT)
        assert created is False
        assert conversation["_id"] == winner["_id"]
        assert await mock_db.conversations.count_documents({"patient_id": PATIENT["id"]}) == 1

    async def test_multi_group_patient_requires_group(self, services):
        with pytest.raises(NoAccessibleGroupError):
            await services.conversations.get_or_create_for_patient(MULTI_GROUP_PATIENT)

    async def test_multi_group_patient_with_explicit_group(self, services):
        conversation, _ = await services.conversations.get_or_create_for_patient(MULTI_GROUP_PATIENT, MOOD_GROUP)
        assert conversation["group_id"] == MOOD_GROUP

    async def test_foreign_group_rejected(self, services):
        with pytest.raises(NoAccessibleGroupError):
            await services.conversations.get_or_create_for_patient(PATIENT, MOOD_GROUP)

    async def test_patient_without_group(self, services):
        with pytest.raises(NoAccessibleGroupError):
            await services.conversations.get_or_create_for_patient(UNGROUPED_PATIENT)

    async def test_auto_start_appends_system_message(self, mock_db, fake_gateway, test_settings):
        from therapy_chat.services.registry import build_services

        config = test_settings.model_copy(update={"AUTO_START": True, "AUTO_START_CONTEXT": "Welcome to chat."})
        bundle = build_services(mock_db, fake_gateway, config)
        conversation, _ = await bundle.conversations.get_or_create_for_patient(PATIENT)
        messages, _ = await bundle.messages.list_after(conversation["_id"])
        assert len(messages) == 1
        assert messages[0]["sender"]["type"] == "system"
        assert messages[0]["content"] == "Welcome to chat."


class TestInitialize:
    """therapist-initiated creation"""

    async def test_therapist_initializes_for_patient_in_scope(self, services):
        conversation = await services.conversations.initialize_for_patient(THERAPIST, PATIENT["id"])
        assert conversation["created_by"] == THERAPIST["id"]

    async def test_therapist_out_of_scope_denied(self, services):
        with pytest.raises(AccessDeniedError):
            await services.conversations.initialize_for_patient(THERAPIST_2, PATIENT["id"])

    async def test_group_inferred_within_therapist_scope(self, services):
        """dr. haddad only sees mood-recovery, so the two-group patient resolves to it"""
        conversation = await services.conversations.initialize_for_patient(THERAPIST_2, MULTI_GROUP_PATIENT["id"])
        assert conversation["group_id"] == MOOD_GROUP

    async def test_unknown_patient_denied(self, services):
        with pytest.raises(AccessDeniedError):
            await services.conversations.initialize_for_patient(THERAPIST, "64b0000000000000000000ff")


class TestAccess:
    """missing and forbidden conversations look the same"""

    async def test_owner_and_assigned_therapist_can_read(self, services):
        conversation, _ = await services.conversations.get_or_create_for_patient(PATIENT)
        assert (await services.conversations.get_for_user(PATIENT, conversation["_id"]))["_id"] == conversation["_id"]
        assert (await services.conversations.get_for_user(THERAPIST, conversation["_id"]))["_id"] == conversation["_id"]
        assert (await services.conversations.get_for_user(ADMIN, conversation["_id"]))["_id"] == conversation["_id"]

    async def test_other_patient_denied(self, services):
        conversation, _ = await services.conversations.get_or_create_for_patient(PATIENT)
        with pytest.raises(AccessDeniedError) as exc:
            await services.conversations.get_for_user(PATIENT_2, conversation["_id"])
        assert exc.value.message == "Conversation not found or access denied"

    async def test_unassigned_therapist_denied(self, services):
        conversation, _ = await services.conversations.get_or_create_for_patient(PATIENT)
        with pytest.raises(AccessDeniedError):
            await services.conversations.get_for_user(THERAPIST_2, conversation["_id"])

    async def test_missing_conversation_denied(self, services):
        with pytest.raises(AccessDeniedError) as exc:
            await services.conversations.get_for_user(THERAPIST, 4242)
        assert exc.value.message == "Conversation not found or access denied"


class TestTransitions:
    """status, mode, risk and ai flag"""

    @pytest.fixture
    async def conversation(self, services):
        conversation, _ = await services.conversations.get_or_create_for_patient(PATIENT)
        return conversation

    async def test_pause_and_resume(self, services, conversation):
        paused = await services.conversations.set_status(THERAPIST, conversation["_id"], "paused")
        assert paused["status"] == "paused"
        assert ai_active(paused) is False
        resumed = await services.conversations.set_status(THERAPIST, conversation["_id"], "active")
        assert resumed["status"] == "active"

    async def test_closed_is_terminal(self, services, conversation):
        closed = await services.conversations.set_status(THERAPIST, conversation["_id"], "closed")
        assert closed["is_open"] is False
        with pytest.raises(ValidationError, match="Conversation is closed"):
            await services.conversations.set_status(THERAPIST, conversation["_id"], "active")

    async def test_closing_allows_a_new_conversation(self, services, conversation):
        await services.conversations.set_status(THERAPIST, conversation["_id"], "closed")
        fresh, created = await services.conversations.get_or_create_for_patient(PATIENT)
        assert created is True
        assert fresh["_id"] != conversation["_id"]

    async def test_invalid_status_writes_nothing(self, services, conversation, mock_db):
        with pytest.raises(ValidationError):
            await services.conversations.set_status(THERAPIST, conversation["_id"], "archived")
        stored = await mock_db.conversations.find_one({"_id": conversation["_id"]})
        assert stored["status"] == "active"

    async def test_set_mode(self, services, conversation):
        updated = await services.conversations.set_mode(THERAPIST, conversation["_id"], "human_only")
        assert updated["mode"] == "human_only"
        assert ai_active(updated) is False

    async def test_therapist_can_lower_risk(self, services, conversation):
        await services.conversations.set_risk_level(THERAPIST, conversation["_id"], "critical")
        updated = await services.conversations.set_risk_level(THERAPIST, conversation["_id"], "low")
        assert updated["risk_level"] == "low"

    async def test_escalate_risk_never_lowers(self, services, conversation):
        await services.conversations.set_risk_level(THERAPIST, conversation["_id"], "high")
        assert await services.conversations.escalate_risk(conversation["_id"], RiskLevel.MEDIUM) is False
        assert (await services.conversations.get(conversation["_id"]))["risk_level"] == "high"
        assert await services.conversations.escalate_risk(conversation["_id"], RiskLevel.CRITICAL) is True
        assert (await services.conversations.get(conversation["_id"]))["risk_level"] == "critical"

    async def test_block_is_idempotent(self, services, conversation, mock_db):
        assert await services.conversations.block(conversation["_id"], "Danger detected (keyword)") is True
        assert await services.conversations.block(conversation["_id"], "Danger detected (keyword)") is False
        entries = await mock_db.transactions.find({"description": {"$regex": "blocked"}}).to_list(length=10)
        assert len(entries) == 1

    async def test_enabling_ai_clears_block(self, services, conversation, mock_db):
        await services.conversations.disable_ai(conversation["_id"])
        await services.conversations.block(conversation["_id"], "Danger detected (keyword)")
        updated = await services.conversations.toggle_ai(THERAPIST, conversation["_id"], True)
        assert updated["ai_enabled"] is True
        assert updated["blocked"] is False
        assert updated["blocked_reason"] is None
        assert ai_active(updated) is True
        entries = await mock_db.transactions.find({"entry_id": conversation["_id"]}).to_list(length=20)
        assert "AI enabled (conversation unblocked)" in [e["description"] for e in entries]

    async def test_unblock_keeps_ai_flag(self, services, conversation):
        await services.conversations.disable_ai(conversation["_id"])
        await services.conversations.block(conversation["_id"], "Danger detected (keyword)")
        updated = await services.conversations.unblock(THERAPIST, conversation["_id"])
        assert updated["blocked"] is False
        assert updated["ai_enabled"] is False

    async def test_unassigned_therapist_cannot_transition(self, services, conversation):
        with pytest.raises(AccessDeniedError):
            await services.conversations.set_status(THERAPIST_2, conversation["_id"], "paused")
