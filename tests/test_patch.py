"""Tests for the patch library."""

from datetime import datetime, timezone
import json

import pytest

from kuberun import patch
from kuberun.exceptions import InputException, PatchBuildError
from kuberun.manifest import EnvVar, NamedResource, SecretEnv
from kuberun.patch import PatchIntent, build_patch
from kuberun.store import PatchType

NOW = datetime(2024, 5, 1, 12, 30, 0, tzinfo=timezone.utc)
DEPLOY = NamedResource("Deployment", "myapp", "myapp")
CRONJOB = NamedResource("CronJob", "myapp", "nightly")


def test_env_patch() -> None:
    """Test setting environment variables of a deployment container."""
    payload = patch.deploy_env_patch(
        "myapp",
        "myapp",
        patch.env_vars([EnvVar("K1", "V1"), EnvVar("K2", "V2")]),
        now=NOW,
    )
    assert payload.target == DEPLOY
    assert payload.patch_type == PatchType.STRATEGIC
    assert payload.stamped_at == NOW
    assert payload.body == {
        "spec": {
            "template": {
                "metadata": {"annotations": {"date": "2024-05-01T12:30:00+00:00"}},
                "spec": {
                    "containers": [
                        {
                            "name": "myapp",
                            "env": [
                                {"name": "K1", "value": "V1"},
                                {"name": "K2", "value": "V2"},
                            ],
                        }
                    ]
                },
            }
        },
        "metadata": {"annotations": {"kubernetes.io/change-cause": "update env vars"}},
    }
    assert json.loads(payload.data) == payload.body


def test_env_patch_stamps_current_time() -> None:
    """Test each env patch is stamped so the pod template always changes."""
    before = datetime.now(timezone.utc)
    payload = patch.deploy_env_patch("myapp", "myapp", [])
    assert payload.stamped_at is not None
    assert payload.stamped_at >= before
    template = payload.body["spec"]["template"]
    assert template["metadata"]["annotations"]["date"] == payload.stamped_at.isoformat()


def test_env_patch_container_name() -> None:
    """Test patching a container that is not named after the workload."""
    payload = patch.deploy_env_patch(
        "myapp", "myapp", patch.env_vars([EnvVar("A", "1")]), container="web"
    )
    containers = payload.body["spec"]["template"]["spec"]["containers"]
    assert containers[0]["name"] == "web"


def test_cronjob_env_patch() -> None:
    """Test a cronjob env patch targets the pod template of its jobs."""
    payload = patch.cronjob_env_patch(
        "myapp", "nightly", patch.env_vars([EnvVar("A", "1")]), now=NOW
    )
    assert payload.target == CRONJOB
    template = payload.body["spec"]["jobTemplate"]["spec"]["template"]
    assert template["spec"]["containers"] == [
        {"name": "nightly", "env": [{"name": "A", "value": "1"}]}
    ]
    assert "date" in template["metadata"]["annotations"]


def test_env_patch_unsupported_kind() -> None:
    """Test env patches only apply to workloads with a pod template."""
    with pytest.raises(PatchBuildError, match="cannot be patched on Service"):
        patch.env_patch("Service", "myapp", "myapp", [])


def test_secret_env_vars() -> None:
    """Test secret backed variables reference a key of the secret."""
    assert patch.secret_env_vars("creds", ["USER", "PASSWORD"]) == [
        {
            "name": "USER",
            "valueFrom": {"secretKeyRef": {"key": "USER", "name": "creds"}},
        },
        {
            "name": "PASSWORD",
            "valueFrom": {"secretKeyRef": {"key": "PASSWORD", "name": "creds"}},
        },
    ]


def test_secret_env_vars_missing_secret() -> None:
    """Test secret backed variables require a secret name."""
    with pytest.raises(PatchBuildError, match="require a secret name"):
        patch.secret_env_vars("", ["USER"])


def test_delete_env_vars() -> None:
    """Test deleted variables carry an explicit deletion marker."""
    assert patch.delete_env_vars(["K1", "K2"]) == [
        {"name": "K1", "$patch": "delete"},
        {"name": "K2", "$patch": "delete"},
    ]


@pytest.mark.parametrize(
    ("builder", "values"),
    [
        (patch.env_vars, [EnvVar("", "value")]),
        (patch.delete_env_vars, [""]),
    ],
)
def test_env_missing_merge_key(builder, values) -> None:  # type: ignore[no-untyped-def]
    """Test a variable without a name is rejected."""
    with pytest.raises(PatchBuildError, match="missing a name"):
        builder(values)


def test_replicas_patch() -> None:
    """Test the replica patch only contains the replica count."""
    payload = patch.replicas_patch("myapp", "myapp", 3)
    assert payload.target == DEPLOY
    assert payload.body == {"spec": {"replicas": 3}}
    assert payload.data == '{"spec": {"replicas": 3}}'


@pytest.mark.parametrize("replicas", [-1, "3", True, 1.5])
def test_replicas_patch_invalid(replicas: object) -> None:
    """Test invalid replica counts are rejected."""
    with pytest.raises(PatchBuildError, match="Invalid replica count"):
        patch.replicas_patch("myapp", "myapp", replicas)  # type: ignore[arg-type]


def test_rollback_patch() -> None:
    """Test the rollback patch only names the target revision."""
    payload = patch.rollback_patch("myapp", "myapp", "3")
    assert payload.body == {"spec": {"rollbackTo": {"revision": 3}}}


def test_rollback_patch_invalid() -> None:
    """Test a revision that is not a number."""
    with pytest.raises(PatchBuildError, match="Invalid revision"):
        patch.rollback_patch("myapp", "myapp", "latest")


def test_annotations_patch() -> None:
    """Test the annotation map is replaced as a whole."""
    payload = patch.annotations_patch(
        "Service", "myapp", "myapp", {"a": "1", "b": "2"}
    )
    assert payload.body == {
        "metadata": {"annotations": {"$patch": "replace", "a": "1", "b": "2"}}
    }


def test_annotations_patch_invalid_value() -> None:
    """Test annotation values must be strings."""
    with pytest.raises(PatchBuildError, match="Invalid annotation"):
        patch.annotations_patch(
            "Service", "myapp", "myapp", {"a": 1}  # type: ignore[dict-item]
        )


def test_unserializable_payload() -> None:
    """Test a body that cannot be serialized is a caller input error."""
    with pytest.raises(PatchBuildError, match="Failed to encode") as exc:
        patch.PatchPayload(target=DEPLOY, body={"spec": {"value": object()}})
    assert isinstance(exc.value, InputException)


def test_build_patch_env() -> None:
    """Test building an env patch from an intent."""
    payload = build_patch(DEPLOY, PatchIntent.ENV, [EnvVar("A", "1")], now=NOW)
    assert payload == patch.deploy_env_patch(
        "myapp", "myapp", [{"name": "A", "value": "1"}], now=NOW
    )


def test_build_patch_secret_env() -> None:
    """Test building a secret env patch from an intent."""
    payload = build_patch(
        CRONJOB, PatchIntent.SECRET_ENV, SecretEnv("creds", ["TOKEN"]), now=NOW
    )
    template = payload.body["spec"]["jobTemplate"]["spec"]["template"]
    assert template["spec"]["containers"][0]["env"] == [
        {
            "name": "TOKEN",
            "valueFrom": {"secretKeyRef": {"key": "TOKEN", "name": "creds"}},
        }
    ]


def test_build_patch_secret_env_invalid() -> None:
    """Test secret env data must describe the secret."""
    with pytest.raises(PatchBuildError, match="Expected SecretEnv"):
        build_patch(DEPLOY, PatchIntent.SECRET_ENV, ["TOKEN"])


def test_build_patch_delete_env() -> None:
    """Test building a delete env patch from an intent."""
    payload = build_patch(DEPLOY, PatchIntent.DELETE_ENV, ["K1"], now=NOW)
    containers = payload.body["spec"]["template"]["spec"]["containers"]
    assert containers == [
        {"name": "myapp", "env": [{"name": "K1", "$patch": "delete"}]}
    ]


def test_build_patch_replicas() -> None:
    """Test building a replica patch from an intent."""
    payload = build_patch(DEPLOY, PatchIntent.REPLICAS, 0)
    assert payload.body == {"spec": {"replicas": 0}}


def test_build_patch_rollback() -> None:
    """Test building a rollback patch from an intent."""
    payload = build_patch(DEPLOY, PatchIntent.ROLLBACK, "7")
    assert payload.body == {"spec": {"rollbackTo": {"revision": 7}}}


def test_build_patch_deployment_only() -> None:
    """Test scaling intents only apply to deployments."""
    with pytest.raises(PatchBuildError, match="only applies to Deployment"):
        build_patch(CRONJOB, PatchIntent.REPLICAS, 2)


def test_build_patch_annotations_cluster_scoped() -> None:
    """Test replacing the annotations of a namespace."""
    target = NamedResource("Namespace", None, "myapp")
    payload = build_patch(target, PatchIntent.ANNOTATIONS, {"owner": "team-a"})
    assert payload.target == target
    assert payload.target_args == ("Namespace", None, "myapp")
