"""Tests for the kubectl resource store."""

import json
import pathlib
import stat

import pytest

from kuberun.config import KubectlConfig
from kuberun.exceptions import (
    AlreadyExistsError,
    ObjectNotFoundError,
    ResourceStoreError,
)
from kuberun.manifest import DeploySpec
from kuberun.store import KubectlStore, LogOptions, PatchType

# Records its arguments and stdin, then replays a scripted response
FAKE_KUBECTL = """#!/bin/sh
printf '%s\\n' "$*" >> "$0.calls"
cat > "$0.stdin"
if [ -f "$0.stdout" ]; then cat "$0.stdout"; fi
if [ -f "$0.stderr" ]; then cat "$0.stderr" >&2; fi
if [ -f "$0.rc" ]; then exit "$(cat "$0.rc")"; fi
exit 0
"""

DEPLOY = DeploySpec(namespace="myapp", name="myapp", image="myapp:v1")


class FakeKubectl:
    """A kubectl binary with scripted responses."""

    def __init__(self, path: pathlib.Path) -> None:
        self.path = path
        path.write_text(FAKE_KUBECTL)
        path.chmod(path.stat().st_mode | stat.S_IEXEC)

    def respond(self, stdout: str = "", stderr: str = "", rc: int = 0) -> None:
        pathlib.Path(f"{self.path}.stdout").write_text(stdout)
        pathlib.Path(f"{self.path}.stderr").write_text(stderr)
        pathlib.Path(f"{self.path}.rc").write_text(str(rc))

    @property
    def calls(self) -> list[str]:
        calls = pathlib.Path(f"{self.path}.calls")
        if not calls.exists():
            return []
        return calls.read_text().splitlines()

    @property
    def stdin(self) -> str:
        return pathlib.Path(f"{self.path}.stdin").read_text()


@pytest.fixture(name="kubectl")
def mock_kubectl(tmp_path: pathlib.Path) -> FakeKubectl:
    return FakeKubectl(tmp_path / "kubectl")


@pytest.fixture(name="store")
def mock_store(kubectl: FakeKubectl) -> KubectlStore:
    return KubectlStore(KubectlConfig(kubectl_bin=str(kubectl.path)))


async def test_get(kubectl: FakeKubectl, store: KubectlStore) -> None:
    """Test reading an object."""
    kubectl.respond(stdout=json.dumps(DEPLOY.to_manifest(3)))
    result = await store.get("Deployment", "myapp", "myapp")
    assert result["spec"]["replicas"] == 3
    assert kubectl.calls == ["get deployment myapp --namespace myapp -o json"]


async def test_cluster_flags(kubectl: FakeKubectl, tmp_path: pathlib.Path) -> None:
    """Test the kubeconfig and context are passed to every command."""
    kubeconfig = tmp_path / "kubeconfig"
    store = KubectlStore(
        KubectlConfig(
            kubectl_bin=str(kubectl.path), kubeconfig=kubeconfig, context="staging"
        )
    )
    kubectl.respond(stdout=json.dumps({"kind": "Namespace"}))
    await store.get("Namespace", None, "myapp")
    assert kubectl.calls == [
        f"--kubeconfig={kubeconfig} --context=staging get namespace myapp -o json"
    ]


async def test_get_not_found(kubectl: FakeKubectl, store: KubectlStore) -> None:
    """Test a missing object is reported as not found."""
    kubectl.respond(
        stderr='Error from server (NotFound): deployments.apps "myapp" not found',
        rc=1,
    )
    with pytest.raises(ObjectNotFoundError, match="Deployment/myapp/myapp not found"):
        await store.get("Deployment", "myapp", "myapp")


async def test_get_failure(kubectl: FakeKubectl, store: KubectlStore) -> None:
    """Test other failures are not reported as not found."""
    kubectl.respond(stderr="Unable to connect to the server: timeout", rc=1)
    with pytest.raises(ResourceStoreError, match="Unable to connect") as exc:
        await store.get("Deployment", "myapp", "myapp")
    assert not isinstance(exc.value, ObjectNotFoundError)


async def test_get_invalid_output(kubectl: FakeKubectl, store: KubectlStore) -> None:
    """Test output that is not a JSON object."""
    kubectl.respond(stdout="not json")
    with pytest.raises(ResourceStoreError, match="Unable to decode"):
        await store.get("Deployment", "myapp", "myapp")


async def test_create(kubectl: FakeKubectl, store: KubectlStore) -> None:
    """Test the manifest is sent on stdin."""
    manifest = DEPLOY.to_manifest()
    kubectl.respond(stdout=json.dumps(manifest))
    await store.create(manifest)
    assert kubectl.calls == ["create -f - -o json"]
    assert json.loads(kubectl.stdin) == manifest


async def test_create_already_exists(kubectl: FakeKubectl, store: KubectlStore) -> None:
    """Test creating an object that exists."""
    kubectl.respond(
        stderr='Error from server (AlreadyExists): deployments.apps "myapp" already '
        "exists",
        rc=1,
    )
    with pytest.raises(AlreadyExistsError):
        await store.create(DEPLOY.to_manifest())


async def test_update(kubectl: FakeKubectl, store: KubectlStore) -> None:
    """Test replacing an object."""
    manifest = DEPLOY.to_manifest()
    kubectl.respond(stdout=json.dumps(manifest))
    await store.update(manifest)
    assert kubectl.calls == ["replace -f - -o json"]
    assert json.loads(kubectl.stdin) == manifest


async def test_update_not_found(kubectl: FakeKubectl, store: KubectlStore) -> None:
    """Test replacing an object that does not exist."""
    kubectl.respond(
        stderr='Error from server (NotFound): deployments.apps "myapp" not found',
        rc=1,
    )
    with pytest.raises(ObjectNotFoundError):
        await store.update(DEPLOY.to_manifest())


async def test_patch(kubectl: FakeKubectl, store: KubectlStore) -> None:
    """Test merging a patch into an object."""
    kubectl.respond(stdout=json.dumps(DEPLOY.to_manifest(2)))
    result = await store.patch(
        "Deployment", "myapp", "myapp", '{"spec": {"replicas": 2}}'
    )
    assert result["spec"]["replicas"] == 2
    assert kubectl.calls == [
        'patch deployment myapp --namespace myapp --type strategic '
        '-p {"spec": {"replicas": 2}} -o json'
    ]


async def test_patch_merge_type(kubectl: FakeKubectl, store: KubectlStore) -> None:
    """Test the patch type is passed to kubectl."""
    kubectl.respond(stdout="{}")
    await store.patch("Service", "myapp", "myapp", "{}", PatchType.MERGE)
    assert "--type merge" in kubectl.calls[0]


async def test_delete(kubectl: FakeKubectl, store: KubectlStore) -> None:
    """Test deleting objects."""
    await store.delete("Pod", "myapp", "migrate")
    await store.delete("Namespace", None, "myapp")
    assert kubectl.calls == [
        "delete pod migrate --namespace myapp --wait=false",
        "delete namespace myapp --wait=false",
    ]


async def test_list_objects(kubectl: FakeKubectl, store: KubectlStore) -> None:
    """Test listing objects with a label selector."""
    kubectl.respond(
        stdout=json.dumps({"items": [{"metadata": {"name": "a"}}, {"metadata": {}}]})
    )
    result = await store.list_objects("Pod", "myapp", "run=myapp")
    assert len(result) == 2
    await store.list_objects("Pod")
    await store.list_objects("Namespace", label_selector="team")
    assert kubectl.calls == [
        "get pod --namespace myapp -l run=myapp -o json",
        "get pod --all-namespaces -o json",
        "get namespace -l team -o json",
    ]


async def test_open_logs(kubectl: FakeKubectl, store: KubectlStore) -> None:
    """Test streaming the logs of a pod."""
    kubectl.respond(stdout="one\ntwo\n")
    options = LogOptions(follow=True, tail_lines=10, container="migrate")
    chunks = [chunk async for chunk in store.open_logs("myapp", "migrate", options)]
    assert b"".join(chunks) == b"one\ntwo\n"
    assert kubectl.calls == [
        "logs migrate --namespace myapp --follow --tail=10 --container=migrate"
    ]


async def test_open_logs_previous(kubectl: FakeKubectl, store: KubectlStore) -> None:
    """Test reading the logs of the previous container."""
    chunks = [
        chunk
        async for chunk in store.open_logs(
            "myapp", "migrate", LogOptions(previous=True)
        )
    ]
    assert chunks == []
    assert kubectl.calls == ["logs migrate --namespace myapp --previous"]


async def test_open_logs_not_found(kubectl: FakeKubectl, store: KubectlStore) -> None:
    """Test streaming the logs of a missing pod."""
    kubectl.respond(
        stderr='Error from server (NotFound): pods "migrate" not found', rc=1
    )
    with pytest.raises(ObjectNotFoundError, match="Pod/myapp/migrate not found"):
        async for _ in store.open_logs("myapp", "migrate", LogOptions()):
            pass
