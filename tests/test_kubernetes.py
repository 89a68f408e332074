"""Tests for namespace naming and cluster resource helpers."""

from unittest.mock import MagicMock

import pytest
from kubernetes.client.exceptions import ApiException

from gitdispatch.kubernetes import (
    NamespaceDeleteTimeout,
    create_namespace,
    create_secrets,
    create_volume_claim,
    delete_namespace,
    detect_registry,
    submit_job,
    trim_namespace,
    volume_claim_name,
    word_trim,
)
from helpers import make_job, make_secret


class TestWordTrim:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("aa-bb-cc-dd-ee", "aa-bb-ee"),
            ("aaaa-bbb-ccc", "aaaa-ccc"),
            ("12345678901", "1234567890"),
            ("1-2-3-4", "1-2-3-4"),
            ("aa-bbbb-dd-ee", "aa-bbbb-ee"),
        ],
    )
    def test_trim_to_ten(self, value, expected):
        assert word_trim(value, "-", 10) == expected

    def test_oversized_leading_pair_keeps_first_word(self):
        assert word_trim("abcdefgh-ijklmnop-q", "-", 10) == "abcdefgh"

    def test_namespace_length_keeps_first_and_last_words(self):
        name = "gw-0-9-23-feature-265-zero-length-metadata-reinstated-aaaagmwypak"

        trimmed = word_trim(name, "-", 63)

        assert trimmed == "gw-0-9-23-feature-265-zero-length-metadata-aaaagmwypak"
        assert len(trimmed) <= 63


class TestTrimNamespace:
    def test_uuid_is_unchanged(self):
        task_id = "5f0c2a6e-8d7b-4b8e-9c55-0d6f5a3b1e2f"

        assert trim_namespace(task_id) == task_id

    def test_invalid_characters_are_replaced(self):
        assert trim_namespace("Feature/Build_42") == "feature-build-42"

    def test_result_fits_a_dns_label(self):
        trimmed = trim_namespace("x" * 40 + "-" + "y" * 40)

        assert len(trimmed) <= 63
        assert not trimmed.endswith("-")


class TestNamespaceLifecycle:
    def test_create_namespace(self):
        core = MagicMock()

        assert create_namespace(core, "task-1", overwrite=False) is True
        body = core.create_namespace.call_args[0][0]
        assert body["metadata"]["name"] == "task-1"

    def test_existing_namespace_without_overwrite_raises(self):
        core = MagicMock()
        core.create_namespace.side_effect = ApiException(status=409, reason="Conflict")

        with pytest.raises(ApiException):
            create_namespace(core, "task-1", overwrite=False)

    def test_existing_namespace_with_overwrite_is_reused(self):
        core = MagicMock()
        core.create_namespace.side_effect = ApiException(status=409, reason="Conflict")

        assert create_namespace(core, "task-1", overwrite=True) is False

    def test_delete_missing_namespace(self):
        core = MagicMock()
        core.delete_namespace.side_effect = ApiException(status=404, reason="Not Found")

        assert delete_namespace(core, "task-1", timeout=5) is False
        core.read_namespace.assert_not_called()

    def test_delete_waits_until_gone(self):
        core = MagicMock()
        core.read_namespace.side_effect = [
            MagicMock(),
            ApiException(status=404, reason="Not Found"),
        ]

        assert delete_namespace(core, "task-1", timeout=5, poll_interval=0) is True
        assert core.read_namespace.call_count == 2
        core.delete_namespace.assert_called_once_with("task-1", propagation_policy="Foreground")

    def test_delete_timeout(self):
        core = MagicMock()

        with pytest.raises(NamespaceDeleteTimeout):
            delete_namespace(core, "task-1", timeout=0.05, poll_interval=0.01)


class TestResources:
    def test_secrets_are_bound_to_namespace(self):
        core = MagicMock()

        names = create_secrets(core, "task-1", [make_secret("a"), make_secret("b")])

        assert names == ["a", "b"]
        namespace, body = core.create_namespaced_secret.call_args_list[0][0]
        assert namespace == "task-1"
        assert body["metadata"]["namespace"] == "task-1"
        assert body["stringData"] == {"token": "s3cret"}

    def test_first_secret_failure_stops_creation(self):
        core = MagicMock()
        core.create_namespaced_secret.side_effect = ApiException(status=422, reason="Invalid")

        with pytest.raises(ApiException):
            create_secrets(core, "task-1", [make_secret("a"), make_secret("b")])

        assert core.create_namespaced_secret.call_count == 1

    def test_volume_claim_body(self):
        core = MagicMock()

        name = create_volume_claim(core, "task-1", volume_claim_name("task-1"), "5Gi", "nfs")

        assert name == "workspace-task-1"
        _, body = core.create_namespaced_persistent_volume_claim.call_args[0]
        assert body["spec"]["accessModes"] == ["ReadWriteMany"]
        assert body["spec"]["resources"]["requests"]["storage"] == "5Gi"
        assert body["spec"]["storageClassName"] == "nfs"

    def test_submit_job_returns_created_name(self):
        batch = MagicMock()
        batch.create_namespaced_job.return_value.metadata.name = "build-x7k2p"

        assert submit_job(batch, "task-1", make_job()) == "build-x7k2p"
        namespace, body = batch.create_namespaced_job.call_args[0]
        assert namespace == "task-1"
        assert body["kind"] == "Job"
        assert body["metadata"]["namespace"] == "task-1"


class TestRegistryProbe:
    def _pod(self, host_ip="10.0.0.5"):
        pod = MagicMock()
        pod.status.phase = "Running"
        pod.status.host_ip = host_ip
        return pod

    def test_microk8s_registry(self):
        core = MagicMock()
        core.list_namespaced_pod.return_value.items = [self._pod()]

        registry = detect_registry(core)

        assert registry.variant == "microk8s"
        assert registry.address == "10.0.0.5:32000"

    def test_minikube_registry(self):
        core = MagicMock()
        core.list_namespaced_pod.return_value.items = []
        address = MagicMock(type="InternalIP", address="192.168.49.2")
        node = MagicMock()
        node.status.addresses = [address]
        core.list_node.return_value.items = [node]

        registry = detect_registry(core)

        assert registry.variant == "minikube"
        assert registry.address == "192.168.49.2:5000"

    def test_plain_cluster_has_no_registry(self):
        core = MagicMock()
        core.list_namespaced_pod.side_effect = ApiException(status=404, reason="Not Found")
        core.list_node.return_value.items = []

        assert detect_registry(core) is None
