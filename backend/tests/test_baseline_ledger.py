"""
Baseline freezes: previous percent derivation and recall reversal
"""
import pytest

from models import BaselineFreeze, LineItemProgress
from core.baseline_ledger import BaselineLedger
from core.billing_errors import BaselineConflictError


def _freeze(app_id, sequence, percents):
    return BaselineFreeze(application_id=app_id, contract_id="contract-1", sequence=sequence, percents=percents)


class TestPreviousPercent:

    def test_never_approved_is_zero(self, empty_ledger):
        assert empty_ledger.previous_percent("li-1") == 0.0
        assert empty_ledger.next_sequence() == 1

    def test_latest_freeze_wins(self):
        ledger = BaselineLedger("contract-1", [
            _freeze("app-2", 2, {"li-1": 60.0}),
            _freeze("app-1", 1, {"li-1": 20.0, "li-2": 10.0}),
        ])
        assert ledger.previous_percent("li-1") == 60.0
        assert ledger.previous_percent("li-2") == 10.0
        assert ledger.baselines() == {"li-1": 60.0, "li-2": 10.0}

    def test_foreign_contract_freeze_rejected(self):
        with pytest.raises(BaselineConflictError):
            BaselineLedger("contract-2", [_freeze("app-1", 1, {"li-1": 20.0})])


class TestFreezeAndRevoke:

    def test_build_freeze_captures_verified_percents(self, empty_ledger, make_application):
        app = make_application(lines=[
            LineItemProgress(line_item_id="li-1", submitted_percent=50, pm_verified_percent=45),
            LineItemProgress(line_item_id="li-2", submitted_percent=25),
        ])
        freeze = empty_ledger.build_freeze(app, frozen_by="pm-1")

        assert freeze.percents == {"li-1": 45.0, "li-2": 25.0}
        assert freeze.sequence == 1
        ledger = empty_ledger.with_freeze(freeze)
        assert ledger.previous_percent("li-1") == 45.0
        assert empty_ledger.previous_percent("li-1") == 0.0

    def test_second_freeze_for_same_application_rejected(self, empty_ledger, make_application):
        app = make_application()
        ledger = empty_ledger.with_freeze(empty_ledger.build_freeze(app))
        with pytest.raises(BaselineConflictError):
            ledger.build_freeze(app)

    def test_revoke_falls_back_to_prior_freeze(self):
        ledger = BaselineLedger("contract-1", [
            _freeze("app-1", 1, {"li-1": 20.0}),
            _freeze("app-2", 2, {"li-1": 55.0}),
        ])
        revoked = ledger.revoke("app-2")

        assert revoked.previous_percent("li-1") == 20.0
        assert ledger.previous_percent("li-1") == 55.0

    def test_revoke_blocked_by_later_overlapping_freeze(self):
        ledger = BaselineLedger("contract-1", [
            _freeze("app-1", 1, {"li-1": 20.0, "li-2": 5.0}),
            _freeze("app-2", 2, {"li-1": 55.0}),
        ])
        with pytest.raises(BaselineConflictError) as exc:
            ledger.revoke("app-1")
        assert exc.value.details["blocking_application_id"] == "app-2"
        assert exc.value.details["line_item_ids"] == ["li-1"]

    def test_revoke_allowed_when_later_freeze_is_disjoint(self):
        ledger = BaselineLedger("contract-1", [
            _freeze("app-1", 1, {"li-1": 20.0}),
            _freeze("app-2", 2, {"li-2": 55.0}),
        ])
        revoked = ledger.revoke("app-1")
        assert revoked.previous_percent("li-1") == 0.0
        assert revoked.previous_percent("li-2") == 55.0

    def test_revoke_unknown_application(self, empty_ledger):
        with pytest.raises(BaselineConflictError):
            empty_ledger.revoke("app-404")

    def test_verified_below_previous_holds_the_baseline(self, make_application):
        ledger = BaselineLedger("contract-1", [_freeze("app-1", 1, {"li-1": 60.0})])
        app = make_application(app_id="app-2", lines=[
            LineItemProgress(line_item_id="li-1", submitted_percent=70,
                             pm_verified_percent=40, previous_percent=60),
            LineItemProgress(line_item_id="li-2", submitted_percent=25),
        ])
        freeze = ledger.build_freeze(app)

        assert freeze.percents == {"li-1": 60.0, "li-2": 25.0}
        assert ledger.with_freeze(freeze).previous_percent("li-1") == 60.0
