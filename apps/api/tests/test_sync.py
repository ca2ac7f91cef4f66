"""Diff-based entitlement sync."""

import itertools

import pytest

from safefamily_api.entitlements.apps import ALL_APPS, APP_ORDER, AppId
from safefamily_api.provisioning.client import ProvisioningClient
from safefamily_api.provisioning.results import AppProvisionResult, Direction
from safefamily_api.provisioning.sync import SyncOrchestrator, compute_diff

from conftest import FakeAppBackend, no_sleep

T, TB, R = AppId.SAFETUNES, AppId.SAFETUBE, AppId.SAFEREADS


def _subsets():
    for n in range(len(APP_ORDER) + 1):
        for combo in itertools.combinations(APP_ORDER, n):
            yield frozenset(combo)


class TestComputeDiff:
    def test_fresh_signup_grants_everything_desired(self):
        diff = compute_diff(frozenset({T, TB}), None)
        assert diff.to_grant == {T, TB}
        assert diff.to_revoke == frozenset()

    def test_swap_one_app(self):
        diff = compute_diff(frozenset({T, R}), frozenset({T, TB}))
        assert diff.to_grant == {R}
        assert diff.to_revoke == {TB}

    def test_equal_sets_are_a_no_op(self):
        assert compute_diff(frozenset({TB}), frozenset({TB})).is_empty

    def test_diff_properties_hold_for_every_pair(self):
        for desired, previous in itertools.product(_subsets(), _subsets()):
            diff = compute_diff(desired, previous)
            assert not (diff.to_grant & diff.to_revoke)
            assert diff.to_grant <= desired
            assert diff.to_revoke <= previous
            assert (previous - diff.to_revoke) | diff.to_grant == desired


class RecordingProvisioner:
    """Provisioner double; apps in ``failing`` return a failed result."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls: list[tuple[str, AppId]] = []

    async def grant(self, app, email):
        self.calls.append(("grant", app))
        return self._result(app, Direction.GRANT)

    async def revoke(self, app, email):
        self.calls.append(("revoke", app))
        return self._result(app, Direction.REVOKE)

    def _result(self, app, direction):
        if app in self.failing:
            return AppProvisionResult(app, direction, success=False, attempts=3, error="HTTP 500 - down")
        return AppProvisionResult(app, direction, success=True, attempts=1)


class TestSyncOrchestrator:
    @pytest.mark.asyncio
    async def test_no_op_makes_no_calls(self):
        provisioner = RecordingProvisioner()
        result = await SyncOrchestrator(provisioner).sync("a@example.com", frozenset({T}), frozenset({T}))

        assert result.results == ()
        assert result.success is True
        assert provisioner.calls == []

    @pytest.mark.asyncio
    async def test_one_call_per_app_in_diff(self):
        provisioner = RecordingProvisioner()
        result = await SyncOrchestrator(provisioner).sync(
            "a@example.com", frozenset({T, R}), frozenset({T, TB})
        )

        assert sorted(provisioner.calls) == [("grant", R), ("revoke", TB)]
        assert result.granted == (R,)
        assert result.revoked == (TB,)
        assert result.to_dict()["to_grant"] == ["safereads"]
        assert result.to_dict()["to_revoke"] == ["safetube"]

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_successful_grants(self):
        provisioner = RecordingProvisioner(failing={TB})
        result = await SyncOrchestrator(provisioner).sync("a@example.com", ALL_APPS)

        assert result.success is False
        assert [r.app for r in result.failed_apps] == [TB]
        assert set(result.granted) == {T, R}
        # nothing is undone after a failure
        assert all(kind == "grant" for kind, _ in provisioner.calls)

    @pytest.mark.asyncio
    async def test_results_listed_in_canonical_order(self):
        result = await SyncOrchestrator(RecordingProvisioner()).sync("a@example.com", ALL_APPS)
        assert [r.app for r in result.results] == list(APP_ORDER)

    @pytest.mark.asyncio
    async def test_end_to_end_with_http_client(self, config):
        backend = FakeAppBackend(config, failing={TB})
        client = ProvisioningClient(config, transport=backend.transport, sleep=no_sleep)

        result = await SyncOrchestrator(client).sync("parent@example.com", ALL_APPS)

        by_app = {r.app: r for r in result.results}
        assert by_app[T].success and by_app[R].success
        assert by_app[TB].attempts == 3 and not by_app[TB].success
        assert len(backend.calls_for(T)) == 1
        assert len(backend.calls_for(R)) == 1
