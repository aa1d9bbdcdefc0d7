"""Unit tests for fleet_core.topology -- endpoint grouping and waves."""

from __future__ import annotations

import pytest
from fleet_core.config import Settings
from fleet_core.errors import ConfigError
from fleet_core.models.migration import EndpointGroup
from fleet_core.models.tenant import SelectionFilter, TenantRecord, TenantStatus
from fleet_core.topology import require_shared_endpoint, resolve_topology, select_tenants, slice_waves

SHARED = "postgres://shared/db"
ACTIVE = SelectionFilter(status=TenantStatus.ACTIVE)


def _tenant(tenant_id: str, *, dedicated: bool = False, url: str | None = None, status: str = "active") -> TenantRecord:
    return TenantRecord(id=tenant_id, status=TenantStatus(status), dedicated=dedicated, datasource_url=url)


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


class TestSelectTenants:
    def test_filter_intersected_with_allow_list(self):
        tenants = [
            _tenant("t1", status="suspended"),
            _tenant("t2", status="active"),
            _tenant("t3", status="suspended"),
        ]
        selection = SelectionFilter(status=TenantStatus.SUSPENDED)
        assert [t.id for t in select_tenants(tenants, selection, ["t1", "t2"])] == ["t1"]

    def test_dedicated_flag(self):
        tenants = [_tenant("a"), _tenant("b", dedicated=True, url="postgres://b/db")]
        selection = SelectionFilter(status=TenantStatus.ACTIVE, dedicated=True)
        assert [t.id for t in select_tenants(tenants, selection)] == ["b"]

    def test_empty_allow_list_selects_nothing(self):
        assert select_tenants([_tenant("a")], ACTIVE, []) == []


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


class TestResolveTopology:
    def test_shared_group_always_first_and_present(self):
        groups = resolve_topology([], ACTIVE, SHARED)
        assert groups == [EndpointGroup(endpoint=SHARED, tenant_ids=[], is_shared=True)]

    def test_non_dedicated_tenants_share_cluster(self):
        groups = resolve_topology([_tenant("a"), _tenant("b")], ACTIVE, SHARED)
        assert len(groups) == 1
        assert groups[0].tenant_ids == ["a", "b"]

    def test_dedicated_tenants_on_same_endpoint_collapse(self):
        tenants = [
            _tenant("s1"),
            _tenant("d1", dedicated=True, url="postgres://dedicated-a/db"),
            _tenant("d2", dedicated=True, url="postgres://dedicated-a/db"),
        ]
        groups = resolve_topology(tenants, ACTIVE, SHARED)
        assert len(groups) == 2
        assert groups[0].is_shared and groups[0].tenant_ids == ["s1"]
        assert groups[1].endpoint == "postgres://dedicated-a/db"
        assert groups[1].tenant_ids == ["d1", "d2"]

    def test_dedicated_order_follows_first_appearance(self):
        tenants = [
            _tenant("x", dedicated=True, url="postgres://b/db"),
            _tenant("y", dedicated=True, url="postgres://a/db"),
            _tenant("z", dedicated=True, url="postgres://b/db"),
        ]
        groups = resolve_topology(tenants, ACTIVE, SHARED)
        assert [g.endpoint for g in groups] == [SHARED, "postgres://b/db", "postgres://a/db"]
        assert groups[1].tenant_ids == ["x", "z"]

    def test_dedicated_on_shared_endpoint_merges(self):
        tenants = [_tenant("a"), _tenant("d", dedicated=True, url=SHARED)]
        groups = resolve_topology(tenants, ACTIVE, SHARED)
        assert len(groups) == 1
        assert groups[0].tenant_ids == ["a", "d"]

    def test_dedicated_without_url_skipped(self, caplog):
        with caplog.at_level("WARNING"):
            groups = resolve_topology([_tenant("d", dedicated=True)], ACTIVE, SHARED)
        assert len(groups) == 1
        assert "no datasource endpoint" in caplog.text

    def test_every_selected_tenant_in_exactly_one_group(self):
        tenants = [
            _tenant("a"),
            _tenant("b", dedicated=True, url="postgres://b/db"),
            _tenant("c", dedicated=True, url="postgres://c/db"),
            _tenant("d"),
        ]
        groups = resolve_topology(tenants, ACTIVE, SHARED)
        covered = [tenant_id for group in groups for tenant_id in group.tenant_ids]
        assert sorted(covered) == ["a", "b", "c", "d"]

    def test_missing_shared_endpoint(self):
        with pytest.raises(ConfigError):
            resolve_topology([], ACTIVE, "")


class TestRequireSharedEndpoint:
    def test_missing(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.delenv("FLEET_DATABASE_URL", raising=False)
        with pytest.raises(ConfigError, match="DATABASE_URL"):
            require_shared_endpoint(Settings())

    def test_present(self):
        assert require_shared_endpoint(Settings(database_url=SHARED)) == SHARED


# ---------------------------------------------------------------------------
# Waves
# ---------------------------------------------------------------------------


def _groups(n: int) -> list[EndpointGroup]:
    return [EndpointGroup(endpoint=f"postgres://e{i}/db") for i in range(n)]


class TestSliceWaves:
    @pytest.mark.parametrize("size", [None, 0, -3])
    def test_single_wave_by_default(self, size):
        waves = slice_waves(_groups(4), size)
        assert len(waves) == 1
        assert waves[0].index == 1
        assert len(waves[0].groups) == 4

    def test_contiguous_slices(self):
        waves = slice_waves(_groups(5), 2)
        assert [w.index for w in waves] == [1, 2, 3]
        assert [len(w.groups) for w in waves] == [2, 2, 1]
        flattened = [g.endpoint for w in waves for g in w.groups]
        assert flattened == [g.endpoint for g in _groups(5)]

    def test_no_groups(self):
        assert slice_waves([], 3) == []
