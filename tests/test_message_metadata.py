"""
Unit tests for inbound message metadata extraction.
"""

from types import SimpleNamespace

from config import A365Config
from message_metadata import (
    MessageMetadata,
    build_conversation_reference,
    determine_user_role,
    extract_message_metadata,
    is_sender_allowed,
)

RAW_ACTIVITY = {
    "type": "message",
    "id": "act-1",
    "channelId": "msteams",
    "serviceUrl": "https://smba.trafficmanager.net/amer/",
    "locale": "en-US",
    "from": {"id": "29:user", "name": "Ada", "aadObjectId": "user-oid"},
    "recipient": {"id": "28:bot", "name": "Agent"},
    "conversation": {"id": "19:abc@thread.v2", "isGroup": True},
    "channelData": {
        "tenant": {"id": "tenant-1"},
        "team": {"id": "team-1", "name": "Planning"},
        "channel": {"name": "General"},
    },
    "text": "hello",
}


class TestExtractMessageMetadata:
    def test_raw_json_activity(self):
        metadata = extract_message_metadata(RAW_ACTIVITY)

        assert metadata.user_id == "29:user"
        assert metadata.user_aad_id == "user-oid"
        assert metadata.user_email == "user-oid"
        assert metadata.user_name == "Ada"
        assert metadata.conversation_id == "19:abc@thread.v2"
        assert metadata.is_group is True
        assert metadata.tenant_id == "tenant-1"
        assert metadata.service_url == "https://smba.trafficmanager.net/amer/"
        assert metadata.activity_id == "act-1"
        assert metadata.team_name == "Planning"
        assert metadata.channel_name == "General"

    def test_sdk_style_activity(self):
        activity = SimpleNamespace(
            id="act-2",
            from_property=SimpleNamespace(id="29:user", name="Ada", aad_object_id=None),
            conversation=SimpleNamespace(id="a:dm", is_group=None, tenant_id="tenant-2"),
            service_url="https://svc/",
            channel_id="msteams",
            channel_data=None,
        )

        metadata = extract_message_metadata(activity)

        assert metadata.user_email == "29:user"
        assert metadata.conversation_id == "a:dm"
        assert metadata.is_group is False
        assert metadata.tenant_id == "tenant-2"
        assert metadata.team_id is None

    def test_missing_fields_default_to_empty(self):
        metadata = extract_message_metadata({"type": "message"})

        assert metadata.user_id == ""
        assert metadata.conversation_id == ""
        assert metadata.service_url == ""


class TestBuildConversationReference:
    def test_reference_from_activity(self):
        agentic = {"bot": {"id": "28:bot", "role": "agenticAppInstance"}}

        ref = build_conversation_reference(RAW_ACTIVITY, agentic_reference=agentic, now=42)

        assert ref.conversation_id == "19:abc@thread.v2"
        assert ref.service_url == "https://smba.trafficmanager.net/amer/"
        assert ref.bot_id == "28:bot"
        assert ref.bot_name == "Agent"
        assert ref.user_aad_id == "user-oid"
        assert ref.tenant_id == "tenant-1"
        assert ref.is_group is True
        assert ref.locale == "en-US"
        assert ref.updated_at == 42
        assert ref.agentic_reference == agentic

    def test_channel_defaults_to_teams(self):
        activity = dict(RAW_ACTIVITY)
        del activity["channelId"]

        assert build_conversation_reference(activity).channel_id == "msteams"


class TestUserRole:
    def metadata(self, email=None, aad_id=None):
        return MessageMetadata(
            user_id="29:user", conversation_id="a:dm", service_url="", user_email=email, user_aad_id=aad_id
        )

    def test_owner_by_email_case_insensitive(self):
        cfg = A365Config(owner="Owner@Contoso.com")
        assert determine_user_role(self.metadata(email="owner@contoso.com"), cfg) == "Owner"

    def test_owner_by_aad_id(self):
        cfg = A365Config(owner_aad_id="owner-oid")
        assert determine_user_role(self.metadata(aad_id="owner-oid"), cfg) == "Owner"

    def test_requester(self):
        cfg = A365Config(owner="owner@contoso.com", owner_aad_id="owner-oid")
        assert determine_user_role(self.metadata(email="x@contoso.com", aad_id="x"), cfg) == "Requester"


class TestAllowList:
    def test_empty_allows_everyone(self):
        assert is_sender_allowed(extract_message_metadata(RAW_ACTIVITY), [])

    def test_wildcard(self):
        assert is_sender_allowed(extract_message_metadata(RAW_ACTIVITY), ["*"])

    def test_match_by_aad_id(self):
        assert is_sender_allowed(extract_message_metadata(RAW_ACTIVITY), ["user-oid"])

    def test_not_listed(self):
        assert not is_sender_allowed(extract_message_metadata(RAW_ACTIVITY), ["someone-else"])
