# tests for the tagging engine
# mention detection, reason parsing, tag rows, alerts and urgency-driven risk escalation

import pytest

from therapy_chat.models.message import SubjectSender
from therapy_chat.services.tagging import TagMention, parse_tag_reasons
from tests.conftest import MULTI_GROUP_PATIENT, PATIENT, THERAPIST, THERAPIST_2


@pytest.fixture
def therapists():
    return [THERAPIST, THERAPIST_2]


class TestDetect:
    """@therapist and @Name mentions"""

    def test_generic_marker_targets_everyone(self, services, therapists):
        mention = services.tagging.detect("@therapist I need to talk", therapists)
        assert mention == TagMention((), None)
        assert mention.targets_all

    def test_generic_marker_case_insensitive(self, services, therapists):
        assert services.tagging.detect("hey @Therapist are you there", therapists).targets_all

    def test_specific_name(self, services, therapists):
        mention = services.tagging.detect("@Dr. Sarah Chen can we talk tomorrow?", therapists)
        assert mention.therapist_ids == (THERAPIST["id"],)

    def test_compact_name(self, services, therapists):
        mention = services.tagging.detect("@Dr.OmarHaddad hello", therapists)
        assert mention.therapist_ids == (THERAPIST_2["id"],)

    def test_unknown_mention_targets_everyone(self, services, therapists):
        assert services.tagging.detect("@nobody help", therapists).targets_all

    def test_no_mention(self, services, therapists):
        assert services.tagging.detect("I had a rough day", therapists) is None

    def test_email_address_is_not_a_mention(self, services, therapists):
        assert services.tagging.detect("my email is alex@email.com", therapists) is None

    def test_reason_code_from_text(self, services, therapists):
        mention = services.tagging.detect("@therapist I need to talk #need_talk", therapists)
        assert mention.reason_code == "need_talk"

    def test_unknown_reason_code_ignored(self, services, therapists):
        assert services.tagging.detect("@therapist #whatever", therapists).reason_code is None

    def test_explicit_reason_wins(self, services, therapists):
        mention = services.tagging.detect("@therapist #overwhelmed", therapists, reason_code="emergency")
        assert mention.reason_code == "emergency"

    def test_disabled(self, mock_db, fake_gateway, test_settings, therapists):
        from therapy_chat.services.registry import build_services

        bundle = build_services(mock_db, fake_gateway, test_settings.model_copy(update={"ENABLE_TAGGING": False}))
        assert bundle.tagging.detect("@therapist help", therapists) is None


class TestReasons:
    """configured reason list"""

    def test_defaults(self, services):
        codes = [r.code for r in services.tagging.reasons]
        assert codes == ["overwhelmed", "need_talk", "urgent", "emergency"]

    def test_custom_reasons(self):
        reasons = parse_tag_reasons('[{"code": "call", "label": "Please call me", "urgency": "urgent"}]')
        assert reasons[0].label == "Please call me"

    def test_bad_config_falls_back(self):
        assert [r.code for r in parse_tag_reasons("not json")][0] == "overwhelmed"

    def test_bad_urgency_falls_back(self):
        reasons = parse_tag_reasons('[{"code": "x", "label": "X", "urgency": "whenever"}]')
        assert reasons[0].code == "overwhelmed"

    def test_compose_tag_message(self, services):
        assert services.tagging.compose_tag_message("need_talk") == (
            "@therapist I would like to speak with my therapist #need_talk: I need to talk soon"
        )
        assert services.tagging.compose_tag_message(None, "  call me please ") == "@therapist call me please"


class TestApply:
    """tag rows, alerts and risk"""

    @pytest.fixture
    async def setup(self, services):
        conversation, _ = await services.conversations.get_or_create_for_patient(PATIENT)
        message = await services.messages.append(
            conversation["_id"], SubjectSender(id=PATIENT["id"]), "@therapist I need to talk"
        )
        return conversation, message

    async def test_need_talk_tag(self, services, mock_db, setup):
        conversation, message = setup
        tags = await services.tagging.apply(conversation, message, TagMention((), "need_talk"))
        assert len(tags) == 1
        assert tags[0]["therapist_id"] is None
        assert tags[0]["urgency"] == "urgent"

        alert = await mock_db.alerts.find_one({"alert_type": "tag_received"})
        assert alert["severity"] == "critical"
        assert alert["message"] == 'Patient tagged therapist: "I need to talk soon"'
        assert alert["metadata"]["tag_id"] == tags[0]["_id"]
        assert (await services.conversations.get(conversation["_id"]))["risk_level"] == "medium"

    async def test_emergency_tag_raises_to_critical(self, services, setup):
        conversation, message = setup
        await services.tagging.apply(conversation, message, TagMention((), "emergency"))
        assert (await services.conversations.get(conversation["_id"]))["risk_level"] == "critical"

    async def test_urgent_tag_never_lowers_risk(self, services, setup):
        conversation, message = setup
        await services.conversations.set_risk_level(THERAPIST, conversation["_id"], "high")
        await services.tagging.apply(conversation, message, TagMention((), "urgent"))
        assert (await services.conversations.get(conversation["_id"]))["risk_level"] == "high"

    async def test_plain_tag_is_normal(self, services, mock_db, setup):
        conversation, message = setup
        tags = await services.tagging.apply(conversation, message, TagMention((), None))
        assert tags[0]["urgency"] == "normal"
        alert = await mock_db.alerts.find_one({"alert_type": "tag_received"})
        assert alert["severity"] == "warning"
        assert alert["message"] == 'Patient tagged therapist: "@therapist I need to talk"'
        assert (await services.conversations.get(conversation["_id"]))["risk_level"] == "low"

    async def test_specific_therapists_get_own_rows(self, services, mock_db):
        conversation, _ = await services.conversations.get_or_create_for_patient(MULTI_GROUP_PATIENT, "mood-recovery")
        message = await services.messages.append(
            conversation["_id"], SubjectSender(id=MULTI_GROUP_PATIENT["id"]), "@Dr. Sarah Chen @Dr. Omar Haddad"
        )
        mention = TagMention((THERAPIST["id"], THERAPIST_2["id"]), None)
        tags = await services.tagging.apply(conversation, message, mention)
        assert [t["therapist_id"] for t in tags] == [THERAPIST["id"], THERAPIST_2["id"]]
        alerts = await mock_db.alerts.find({"alert_type": "tag_received"}).to_list(length=10)
        assert sorted(a["target_therapist_id"] for a in alerts) == sorted([THERAPIST["id"], THERAPIST_2["id"]])
