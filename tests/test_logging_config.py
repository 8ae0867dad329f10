from core.logging_config import MASK, redact_secrets


def test_top_level_secrets_are_masked():
    event = redact_secrets(None, "info", {"event": "x", "Authorization": "Bearer abc", "target": "h:1"})
    assert event["Authorization"] == MASK
    assert event["target"] == "h:1"


def test_nested_metadata_is_masked():
    event = redact_secrets(None, "info", {
        "event": "x",
        "metadata": {"authorization": "Basic zz", "x-trace": "1", "inner": {"password": "pw"}},
    })
    assert event["metadata"]["authorization"] == MASK
    assert event["metadata"]["x-trace"] == "1"
    assert event["metadata"]["inner"]["password"] == MASK


def test_non_secret_values_untouched():
    event = {"event": "grpc_started", "auth_required": True, "port": 50051}
    assert redact_secrets(None, "info", dict(event)) == event
