import pytest

from releasebox.errors_catalog import actionable_error


def test_actionable_error_formats_message_with_suggested_action():
    message = actionable_error("provisioning_step_failed", step="install rust")

    assert "Provisioning step `install rust` failed." in message
    assert "Suggested action:" in message


def test_actionable_error_rejects_unknown_code():
    with pytest.raises(KeyError):
        actionable_error("not-a-real-code")
