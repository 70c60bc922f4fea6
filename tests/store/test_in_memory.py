"""Tests for the in-memory resource store."""

import asyncio
import json

import pytest

from kuberun.exceptions import (
    AlreadyExistsError,
    ObjectNotFoundError,
    ResourceStoreError,
)
from kuberun.manifest import DeploySpec, NamedResource, PodPhase, PodSpec
from kuberun.store import InMemoryStore, LogOptions, PatchType


@pytest.fixture(name="store")
def mock_store() -> InMemoryStore:
    return InMemoryStore()


DEPLOY = DeploySpec(namespace="myapp", name="myapp", image="myapp:v1")
POD = PodSpec(namespace="myapp", name="migrate", image="myapp:v1")


async def test_create_and_get(store: InMemoryStore) -> None:
    """Test creating an object and reading it back."""
    created = await store.create(DEPLOY.to_manifest(2))
    assert created["metadata"]["uid"]
    assert created["metadata"]["creationTimestamp"].endswith("Z")
    assert created["status"] == {"replicas": 2}

    result = await store.get("Deployment", "myapp", "myapp")
    assert result == created
    assert result["spec"]["template"]["spec"]["containers"][0]["image"] == "myapp:v1"


async def test_get_returns_copy(store: InMemoryStore) -> None:
    """Test callers cannot mutate the stored object."""
    await store.create(DEPLOY.to_manifest())
    result = await store.get("Deployment", "myapp", "myapp")
    result["spec"]["replicas"] = 10
    assert (await store.get("Deployment", "myapp", "myapp"))["spec"]["replicas"] == 1


async def test_get_not_found(store: InMemoryStore) -> None:
    """Test reading an object that does not exist."""
    with pytest.raises(ObjectNotFoundError, match="Deployment/myapp/myapp not found"):
        await store.get("Deployment", "myapp", "myapp")


async def test_create_already_exists(store: InMemoryStore) -> None:
    """Test creating an object twice."""
    await store.create(DEPLOY.to_manifest())
    with pytest.raises(AlreadyExistsError):
        await store.create(DEPLOY.to_manifest())


async def test_create_invalid(store: InMemoryStore) -> None:
    """Test creating an object without a name."""
    with pytest.raises(ResourceStoreError, match="Invalid object"):
        await store.create({"kind": "Deployment", "metadata": {}})


async def test_update_keeps_control_plane_fields(store: InMemoryStore) -> None:
    """Test an update keeps the identity and status of the object."""
    created = await store.create(POD.to_manifest())
    updated = await store.update(POD.to_manifest())
    assert updated["metadata"]["uid"] == created["metadata"]["uid"]
    assert updated["status"] == {"phase": "Pending"}
    assert int(updated["metadata"]["resourceVersion"]) > int(
        created["metadata"]["resourceVersion"]
    )


async def test_update_not_found(store: InMemoryStore) -> None:
    """Test updating an object that does not exist."""
    with pytest.raises(ObjectNotFoundError):
        await store.update(DEPLOY.to_manifest())


async def test_patch_strategic(store: InMemoryStore) -> None:
    """Test a strategic merge patch."""
    await store.create(DEPLOY.to_manifest())
    result = await store.patch(
        "Deployment", "myapp", "myapp", json.dumps({"spec": {"replicas": 4}})
    )
    assert result["spec"]["replicas"] == 4
    assert result["status"]["replicas"] == 4
    assert result["spec"]["template"]["spec"]["containers"][0]["name"] == "myapp"


async def test_patch_merge(store: InMemoryStore) -> None:
    """Test a JSON merge patch replaces lists."""
    await store.create(DEPLOY.to_manifest())
    body = {"spec": {"template": {"spec": {"containers": [{"name": "other"}]}}}}
    result = await store.patch(
        "Deployment", "myapp", "myapp", json.dumps(body), PatchType.MERGE
    )
    assert result["spec"]["template"]["spec"]["containers"] == [{"name": "other"}]


async def test_patch_not_found(store: InMemoryStore) -> None:
    """Test patching an object that does not exist."""
    with pytest.raises(ObjectNotFoundError):
        await store.patch("Deployment", "myapp", "myapp", "{}")


async def test_patch_invalid(store: InMemoryStore) -> None:
    """Test a patch that is not a JSON object."""
    await store.create(DEPLOY.to_manifest())
    with pytest.raises(ResourceStoreError, match="Invalid patch"):
        await store.patch("Deployment", "myapp", "myapp", "[1, 2]")
    with pytest.raises(ResourceStoreError, match="Invalid patch"):
        await store.patch("Deployment", "myapp", "myapp", "{not json")


async def test_delete(store: InMemoryStore) -> None:
    """Test deleting an object."""
    await store.create(DEPLOY.to_manifest())
    await store.delete("Deployment", "myapp", "myapp")
    with pytest.raises(ObjectNotFoundError):
        await store.get("Deployment", "myapp", "myapp")
    with pytest.raises(ObjectNotFoundError):
        await store.delete("Deployment", "myapp", "myapp")


async def test_cluster_scoped(store: InMemoryStore) -> None:
    """Test objects that are not in a namespace."""
    await store.create(
        {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "myapp"}}
    )
    result = await store.get("Namespace", "ignored", "myapp")
    assert "namespace" not in result["metadata"]
    assert ("get", NamedResource("Namespace", None, "myapp")) in store.calls


async def test_list_objects(store: InMemoryStore) -> None:
    """Test listing objects by namespace and label selector."""
    await store.create(DEPLOY.to_manifest())
    await store.create(
        DeploySpec(
            namespace="other", name="worker", image="w:v1", labels={"tier": "batch"}
        ).to_manifest()
    )
    await store.create(POD.to_manifest())

    names = [o["metadata"]["name"] for o in await store.list_objects("Deployment")]
    assert names == ["myapp", "worker"]

    result = await store.list_objects("Deployment", "other")
    assert [o["metadata"]["name"] for o in result] == ["worker"]

    for selector, expected in [
        ("run=myapp", ["myapp"]),
        ("run==worker", ["worker"]),
        ("run!=myapp", ["worker"]),
        ("tier", ["worker"]),
        ("!tier", ["myapp"]),
        ("run=worker,tier=batch", ["worker"]),
        ("run=worker,tier=web", []),
    ]:
        result = await store.list_objects("Deployment", label_selector=selector)
        assert [o["metadata"]["name"] for o in result] == expected, selector


async def test_inject_error(store: InMemoryStore) -> None:
    """Test failing the next call of an operation."""
    await store.create(DEPLOY.to_manifest())
    store.inject_error("get", ResourceStoreError("connection refused"))
    with pytest.raises(ResourceStoreError, match="connection refused"):
        await store.get("Deployment", "myapp", "myapp")
    assert await store.get("Deployment", "myapp", "myapp")


async def test_pod_lifecycle(store: InMemoryStore) -> None:
    """Test scripting the phases of a pod."""
    created = await store.create(POD.to_manifest())
    assert created["status"]["phase"] == "Pending"

    store.set_pod_phase("myapp", "migrate", PodPhase.RUNNING)
    pod = await store.get("Pod", "myapp", "migrate")
    assert pod["status"]["phase"] == "Running"
    assert pod["status"]["startTime"]

    store.set_pod_terminated("myapp", "migrate", 2)
    pod = await store.get("Pod", "myapp", "migrate")
    assert pod["status"]["phase"] == "Failed"
    assert pod["status"]["containerStatuses"][0]["state"] == {
        "terminated": {"exitCode": 2, "reason": "Error"}
    }


async def test_logs_tail(store: InMemoryStore) -> None:
    """Test reading the last lines of the logs of a pod."""
    await store.create(POD.to_manifest())
    store.write_log("myapp", "migrate", "one\ntwo\nthree\n")

    chunks = [
        chunk
        async for chunk in store.open_logs("myapp", "migrate", LogOptions(tail_lines=2))
    ]
    assert b"".join(chunks) == b"two\nthree\n"

    chunks = [
        chunk async for chunk in store.open_logs("myapp", "migrate", LogOptions())
    ]
    assert b"".join(chunks) == b"one\ntwo\nthree\n"


async def test_logs_follow(store: InMemoryStore) -> None:
    """Test following the logs of a pod until it ends."""
    await store.create(POD.to_manifest())
    store.set_pod_phase("myapp", "migrate", PodPhase.RUNNING)
    store.write_log("myapp", "migrate", "starting\n")

    async def read() -> bytes:
        options = LogOptions(follow=True, tail_lines=10)
        chunks = [
            chunk async for chunk in store.open_logs("myapp", "migrate", options)
        ]
        return b"".join(chunks)

    reader = asyncio.create_task(read())
    await asyncio.sleep(0.01)
    assert not reader.done()

    store.write_log("myapp", "migrate", "done\n")
    store.set_pod_terminated("myapp", "migrate", 0)
    assert await asyncio.wait_for(reader, 1.0) == b"starting\ndone\n"


async def test_logs_not_found(store: InMemoryStore) -> None:
    """Test reading the logs of a pod that does not exist."""
    with pytest.raises(ObjectNotFoundError):
        async for _ in store.open_logs("myapp", "missing", LogOptions()):
            pass
