import pytest

from conftest import FakeRegistry
from nodeforge.deployment.reconcile import reconcile_registry
from nodeforge.errors import RegistryError
from nodeforge.models.registry import TagFilter

STAGE_TAGS = TagFilter(required_tags=frozenset({"tag:hetzner", "tag:dev"}))


def _registry(**kwargs) -> FakeRegistry:
    reg = FakeRegistry(**kwargs)
    reg.add("n1", "h1", "tag:hetzner", "tag:dev")
    reg.add("n2", "h2", "tag:hetzner", "tag:dev")
    reg.add("n3", "h3", "tag:hetzner", "tag:dev")
    return reg


async def test_only_unexpected_devices_deleted():
    reg = _registry()
    report = await reconcile_registry(reg, {"h1", "h2"}, STAGE_TAGS)
    assert report.deleted == ["h3"]
    assert report.kept == ["h1", "h2"]
    assert reg.deleted_ids == ["n3"]
    assert report.ok


async def test_devices_outside_filter_untouched():
    reg = _registry()
    reg.add("p1", "prod-hetzner-worker-server-0", "tag:hetzner", "tag:prod")
    reg.add("x1", "laptop")
    report = await reconcile_registry(reg, {"h1", "h2", "h3"}, STAGE_TAGS)
    assert report.deleted == []
    assert set(reg.devices) == {"n1", "n2", "n3", "p1", "x1"}


async def test_failed_deletion_collected_and_batch_continues():
    reg = _registry(fail_delete={"n2"})
    report = await reconcile_registry(reg, {"h1"}, STAGE_TAGS)
    assert report.deleted == ["h3"]
    assert len(report.failures) == 1
    assert report.failures[0].hostname == "h2"
    assert report.failures[0].device_id == "n2"
    assert not report.ok


async def test_listing_failure_propagates():
    reg = _registry(fail_list=True)
    with pytest.raises(RegistryError):
        await reconcile_registry(reg, set(), STAGE_TAGS)
