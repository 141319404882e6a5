"""Tests for the local deployment state file."""
import json
import os

import pytest

from fargate_deploy.aws.state.state_manager import (
    DEPLOYED,
    DEPLOYING,
    FAILED,
    NOT_DEPLOYED,
    StateManager,
)
from fargate_deploy.exceptions import StateConflictError


def test_fresh_state(state_manager):
    assert state_manager.status == NOT_DEPLOYED
    assert state_manager.list_resources() == {}
    assert state_manager.endpoint is None


def test_state_persists_across_instances(settings, state_manager):
    state_manager.start_deployment("chatbot-1", "chatbot", "abc123")
    state_manager.record_resource("vpc", "vpc-1", {"cidr": "10.0.0.0/16"})

    reloaded = StateManager(settings.state_file)

    assert reloaded.status == DEPLOYING
    assert reloaded.app_name == "chatbot"
    assert reloaded.fingerprint == "abc123"
    assert reloaded.get_resource("vpc", "vpc-1")["cidr"] == "10.0.0.0/16"


def test_record_keeps_first_recorded_time(state_manager):
    state_manager.record_resource("vpc", "vpc-1", {"cidr": "10.0.0.0/16"})
    first = state_manager.get_resource("vpc", "vpc-1")["recorded_at"]

    state_manager.record_resource("vpc", "vpc-1", {"cidr": "10.0.0.0/16"})

    assert state_manager.get_resource("vpc", "vpc-1")["recorded_at"] == first


def test_redeploy_keeps_resources(state_manager):
    state_manager.start_deployment("chatbot-1", "chatbot", "abc")
    state_manager.record_resource("vpc", "vpc-1")
    state_manager.mark_deployment_complete("http://54.10.20.30:8080")

    state_manager.start_deployment("chatbot-2", "chatbot", "def")

    assert state_manager.list_resources("vpc") == {"vpc-1": state_manager.get_resource("vpc", "vpc-1")}
    assert state_manager.state["created_at"] is not None


def test_other_app_with_resources_is_refused(state_manager):
    state_manager.start_deployment("chatbot-1", "chatbot", "abc")
    state_manager.record_resource("vpc", "vpc-1")

    with pytest.raises(StateConflictError) as exc_info:
        state_manager.start_deployment("summarizer-1", "summarizer", "def")

    assert exc_info.value.recorded_app == "chatbot"
    assert "fargate-deploy destroy" in str(exc_info.value)
    assert state_manager.app_name == "chatbot"
    assert state_manager.fingerprint == "abc"
    assert list(state_manager.list_resources("vpc")) == ["vpc-1"]


def test_other_app_without_resources_takes_over(state_manager):
    state_manager.start_deployment("chatbot-1", "chatbot", "abc")
    state_manager.mark_deployment_failed("denied", "provider")

    state_manager.start_deployment("summarizer-1", "summarizer", "def")

    assert state_manager.app_name == "summarizer"
    assert state_manager.status == DEPLOYING
    assert state_manager.state["error"] is None


def test_forget_resource_drops_empty_type(state_manager):
    state_manager.record_resource("subnet", "subnet-1")
    state_manager.record_resource("subnet", "subnet-2")

    state_manager.forget_resource("subnet", "subnet-1")
    assert list(state_manager.list_resources("subnet")) == ["subnet-2"]

    state_manager.forget_resource("subnet", "subnet-2")
    assert "subnet" not in state_manager.list_resources()


def test_complete_and_failed(state_manager):
    state_manager.start_deployment("chatbot-1", "chatbot", "abc")
    state_manager.mark_deployment_failed("No healthy task within 600s", "timeout")

    assert state_manager.status == FAILED
    assert state_manager.state["error"] == {"kind": "timeout", "reason": "No healthy task within 600s"}

    state_manager.mark_deployment_complete("http://54.10.20.30:8080")

    assert state_manager.status == DEPLOYED
    assert state_manager.state["error"] is None
    assert state_manager.endpoint == "http://54.10.20.30:8080"


def test_clear_state_removes_file(settings, state_manager):
    state_manager.record_resource("vpc", "vpc-1")
    assert os.path.exists(settings.state_file)

    state_manager.clear_state()

    assert not os.path.exists(settings.state_file)
    assert state_manager.status == NOT_DEPLOYED


def test_corrupt_file_ignored(settings, caplog):
    with open(settings.state_file, "w") as f:
        f.write("{not json")

    state_manager = StateManager(settings.state_file)

    assert state_manager.status == NOT_DEPLOYED
    assert "Ignoring unreadable state file" in caplog.text


def test_summary_counts_resources(state_manager):
    state_manager.start_deployment("chatbot-1", "chatbot", "abc")
    state_manager.record_resource("subnet", "subnet-1")
    state_manager.record_resource("subnet", "subnet-2")
    state_manager.mark_deployment_complete("http://54.10.20.30:8080")

    summary = state_manager.summary()

    assert summary["resources"] == {"subnet": 2}
    assert summary["endpoint"] == "http://54.10.20.30:8080"
    assert summary["status"] == DEPLOYED


def test_file_is_json(settings, state_manager):
    state_manager.start_deployment("chatbot-1", "chatbot", "abc")

    with open(settings.state_file) as f:
        data = json.load(f)
    assert data["deployment_id"] == "chatbot-1"
    assert data["last_updated"]
