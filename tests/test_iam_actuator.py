from google.iam.v1 import policy_pb2

from talos_gcp.actuators.iam import _apply_bindings, modify_project_bindings

SA = "serviceAccount:a-sa@test-project.iam.gserviceaccount.com"


def _policy():
    return policy_pb2.Policy(
        etag=b"abc",
        bindings=[
            policy_pb2.Binding(role="roles/logging.logWriter", members=[SA, "user:ops@example.com"]),
            policy_pb2.Binding(role="roles/monitoring.metricWriter", members=[SA]),
        ],
    )


def _members(policy):
    return {b.role: list(b.members) for b in policy.bindings}


def test_bindings_are_added_and_removed():
    policy = _policy()

    changed = _apply_bindings(
        policy,
        SA,
        add=["roles/logging.logWriter", "roles/storage.objectViewer"],
        remove=["roles/monitoring.metricWriter"],
    )

    assert changed
    assert _members(policy) == {
        "roles/logging.logWriter": [SA, "user:ops@example.com"],
        "roles/storage.objectViewer": [SA],
    }


def test_removal_keeps_other_members():
    policy = _policy()

    assert _apply_bindings(policy, SA, add=[], remove=["roles/logging.logWriter"])
    assert _members(policy)["roles/logging.logWriter"] == ["user:ops@example.com"]


def test_unchanged_policy_reports_no_change():
    policy = _policy()

    assert not _apply_bindings(
        policy, SA, add=["roles/monitoring.metricWriter"], remove=["roles/storage.admin"]
    )
    assert _members(policy) == _members(_policy())


def test_project_bindings_are_written_back(mocker):
    client = mocker.patch("talos_gcp.actuators.iam.get_projects_client").return_value
    client.get_iam_policy.return_value = _policy()

    modify_project_bindings("test-project", SA, add=["roles/storage.objectViewer"])

    request = client.set_iam_policy.call_args.kwargs["request"]
    assert request.resource == "projects/test-project"
    assert request.policy.etag == b"abc"
    assert SA in _members(request.policy)["roles/storage.objectViewer"]


def test_unchanged_project_policy_is_not_written(mocker):
    client = mocker.patch("talos_gcp.actuators.iam.get_projects_client").return_value
    client.get_iam_policy.return_value = _policy()

    modify_project_bindings("test-project", SA, add=["roles/logging.logWriter"])

    client.set_iam_policy.assert_not_called()
