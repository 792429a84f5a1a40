"""
Needs-review queue tests.

Covers:
    - pending → resolved | ignored, terminal states
    - quantity delta coalescing inside the window
    - reconciling a grouped set to a target count (up and down)
    - merging a near-duplicate drawing into an existing one
    - reverting a drawing move, verifying an operator through the queue
    - listing and summary counts
"""

import pytest

from pipetrack.core.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from pipetrack.models import db
from pipetrack.models.audit import AuditLog
from pipetrack.models.component import Component
from pipetrack.models.needs_review import ReviewItem
from pipetrack.models.operator import Operator
from pipetrack.models.project import Drawing
from pipetrack.services import review_queue_service
from pipetrack.services.operator_service import register_operator
from pipetrack.services.progress_ledger_service import update_milestone
from pipetrack.services.takeoff_import_service import ImportOptions, validate_and_commit


def _valve(qty, drawing="P-001", code="VGT-2-150", size="2"):
    return {"DRAWING": drawing, "TYPE": "Valve", "QTY": qty, "CMDTY CODE": code, "SIZE": size}


def _active_seqs(project_id):
    return sorted(c.seq for c in Component.query_active().filter_by(project_id=project_id, component_type="valve"))


@pytest.fixture()
def imported(project, rows):
    """Commit a batch of records into the test project."""
    def _imported(*records, **options):
        return validate_and_commit(project.id, rows(*records), ImportOptions(**options))
    return _imported


# ═════════════════════════════════════════════════════════════════════════════
# Lifecycle
# ═════════════════════════════════════════════════════════════════════════════


class TestLifecycle:
    def test_resolve_is_terminal(self, imported):
        imported(_valve(10))
        imported(_valve(12))
        item = ReviewItem.query.one()

        resolved = review_queue_service.resolve_review(item.id, "lead", note="agreed with client")
        assert resolved["status"] == "resolved"
        assert resolved["resolved_by"] == "lead"
        assert resolved["resolution_note"] == "agreed with client"
        assert resolved["resolved_at"] is not None

        with pytest.raises(InvalidTransitionError):
            review_queue_service.resolve_review(item.id, "lead")
        with pytest.raises(InvalidTransitionError):
            review_queue_service.ignore_review(item.id, "lead")

    def test_ignore_takes_no_action(self, imported, project):
        imported(_valve(10))
        imported(_valve(7))
        item = ReviewItem.query.one()

        ignored = review_queue_service.ignore_review(item.id, "lead", note="takeoff typo")
        assert ignored["status"] == "ignored"
        assert ignored["resolution"] is None
        assert _active_seqs(project.id) == list(range(1, 11))
        assert AuditLog.query.filter_by(action="review.ignore").count() == 1

    def test_missing_review(self):
        with pytest.raises(NotFoundError):
            review_queue_service.resolve_review(5150, "lead")

    def test_listing_and_summary(self, imported, project):
        imported(_valve(10), _valve(4, code="VB-1"))
        imported(_valve(12), _valve(2, code="VB-1"))
        first, second = ReviewItem.query.order_by(ReviewItem.id).all()
        review_queue_service.ignore_review(first.id, "lead")

        pending = review_queue_service.list_reviews(project.id, status="pending")
        assert [i["id"] for i in pending] == [second.id]
        assert len(review_queue_service.list_reviews(project.id, review_type="quantity_delta")) == 2

        summary = review_queue_service.review_summary(project.id)
        assert summary["by_status"] == {"ignored": 1, "pending": 1, "resolved": 0}
        assert summary["pending_by_type"]["quantity_delta"] == 1
        assert summary["pending_by_type"]["rollback"] == 0

    def test_listing_rejects_unknown_filters(self, project):
        with pytest.raises(ValidationError):
            review_queue_service.list_reviews(project.id, status="open")
        with pytest.raises(ValidationError):
            review_queue_service.list_reviews(project.id, review_type="typo")

    def test_unknown_review_type_cannot_be_raised(self, project):
        with pytest.raises(ValidationError):
            review_queue_service.raise_review(project.id, "gremlin", {})


# ═════════════════════════════════════════════════════════════════════════════
# Quantity deltas
# ═════════════════════════════════════════════════════════════════════════════


class TestQuantityDelta:
    def test_repeated_increases_coalesce(self, imported):
        imported(_valve(10))
        imported(_valve(13))
        imported(_valve(15))

        item = ReviewItem.query.one()
        assert item.payload["delta"] == 5
        assert item.payload["old_count"] == 10
        assert item.payload["new_count"] == 15
        assert item.payload["coalesced"] == 1
        assert [s["delta"] for s in item.payload["sources"]] == [3, 2]

    def test_decreases_coalesce_against_first_count(self, imported):
        imported(_valve(10))
        imported(_valve(8))
        imported(_valve(8))
        imported(_valve(7))

        item = ReviewItem.query.one()
        assert item.payload["old_count"] == 10
        assert item.payload["new_count"] == 7
        assert item.payload["delta"] == -3
        assert item.payload["applied"] is False
        assert [s["delta"] for s in item.payload["sources"]] == [-2, -1]

    def test_no_coalescing_outside_window(self, app, imported, monkeypatch):
        monkeypatch.setitem(app.config, "REVIEW_COALESCE_WINDOW_MINUTES", -1)
        imported(_valve(10))
        imported(_valve(13))
        imported(_valve(15))
        assert ReviewItem.query.filter_by(type="quantity_delta").count() == 2

    def test_resolved_delta_is_not_reused(self, imported):
        imported(_valve(10))
        imported(_valve(13))
        review_queue_service.resolve_review(ReviewItem.query.one().id, "lead")
        imported(_valve(14))
        assert ReviewItem.query.filter_by(status="pending").count() == 1
        assert ReviewItem.query.count() == 2

    def test_decrease_resolution_retires_highest_sequences(self, imported, project):
        imported(_valve(10))
        comps = Component.query.filter_by(component_type="valve").order_by(Component.seq).all()
        update_milestone(comps[0].id, "Receive", "complete", "u1")
        imported(_valve(7))
        item = ReviewItem.query.one()

        resolved = review_queue_service.resolve_review(item.id, "lead")
        assert resolved["resolution"]["outcome"] == {
            "action": "reconcile", "target_count": 7, "created": 0, "retired": 3,
        }
        assert _active_seqs(project.id) == list(range(1, 8))
        retired = Component.query_retired().all()
        assert {c.seq for c in retired} == {8, 9, 10}
        assert all(c.retire_reason == "quantity reduction" for c in retired)
        assert float(db.session.get(Component, comps[0].id).percent_complete) == 10.0

        audit = AuditLog.query.filter_by(action="component.reconcile").one()
        assert audit.diff["retired"] == 3

    def test_reimport_after_reduction_is_clean(self, imported, project):
        imported(_valve(10))
        imported(_valve(7))
        review_queue_service.resolve_review(ReviewItem.query.one().id, "lead")

        result = imported(_valve(7))
        assert result["created"] == 0
        assert result["flagged"] == 0

    def test_increase_resolution_with_explicit_target(self, imported, project):
        imported(_valve(10))
        imported(_valve(13))
        item = ReviewItem.query.one()

        review_queue_service.resolve_review(item.id, "lead", resolution={"target_count": 15})
        assert _active_seqs(project.id) == list(range(1, 16))
        added = Component.query.filter_by(seq=15).one()
        assert added.attributes["cmdty_code"] == "VGT-2-150"
        assert added.created_by == "lead"

    def test_bad_target_count(self, imported):
        imported(_valve(10))
        imported(_valve(12))
        item = ReviewItem.query.one()
        with pytest.raises(ValidationError):
            review_queue_service.resolve_review(item.id, "lead", resolution={"target_count": -2})
        assert db.session.get(ReviewItem, item.id).status == "pending"


# ═════════════════════════════════════════════════════════════════════════════
# Drawings
# ═════════════════════════════════════════════════════════════════════════════


class TestDrawingResolutions:
    def test_merge_near_duplicate_drawing(self, imported, project):
        imported(_valve(2, drawing="DWG-10045-A", code="V-1"))
        imported(
            _valve(1, drawing="DWG-10045-B", code="V-1"),
            {"DRAWING": "DWG-10045-B", "TYPE": "Spool", "ID": "SP-9"},
        )
        item = ReviewItem.query.filter_by(type="similar_parent_document").one()
        target = Drawing.query.filter_by(drawing_no_norm="DWG-10045-A").one()
        source = Drawing.query.filter_by(drawing_no_norm="DWG-10045-B").one()

        resolved = review_queue_service.resolve_review(item.id, "lead", resolution={"action": "merge"})
        assert resolved["resolution"]["outcome"]["moved"] == 2
        assert resolved["resolution"]["outcome"]["target_document_id"] == target.id

        db.session.refresh(source)
        assert source.is_retired
        moved_valve = Component.query.filter_by(component_type="valve", drawing_id=target.id, seq=3).one()
        assert moved_valve.group_token == "DWG-10045-A|V-1|2"
        spool = Component.query.filter_by(component_type="spool").one()
        assert spool.drawing_id == target.id
        assert _active_seqs(project.id) == [1, 2, 3]

    def test_confirm_keeps_both_drawings(self, imported):
        imported({"DRAWING": "DWG-10045-A", "TYPE": "Spool", "ID": "SP-1"})
        imported({"DRAWING": "DWG-10045-B", "TYPE": "Spool", "ID": "SP-2"})
        item = ReviewItem.query.one()
        resolved = review_queue_service.resolve_review(item.id, "lead")
        assert resolved["resolution"]["outcome"] == {"action": "confirm"}
        assert Drawing.query_active().count() == 2

    def test_variant_cannot_be_merged(self, imported):
        imported({"DRAWING": "P-001", "TYPE": "Spool", "ID": "SP-1"})
        imported({"DRAWING": "P-0001", "TYPE": "Spool", "ID": "SP-2"})
        item = ReviewItem.query.one()
        with pytest.raises(ValidationError):
            review_queue_service.resolve_review(item.id, "lead", resolution={"action": "merge"})
        assert db.session.get(ReviewItem, item.id).status == "pending"

    def test_unknown_resolution_action(self, imported):
        imported({"DRAWING": "DWG-10045-A", "TYPE": "Spool", "ID": "SP-1"})
        imported({"DRAWING": "DWG-10045-B", "TYPE": "Spool", "ID": "SP-2"})
        with pytest.raises(ValidationError):
            review_queue_service.resolve_review(ReviewItem.query.one().id, "lead", resolution={"action": "split"})

    def test_revert_parent_change(self, imported):
        imported({"DRAWING": "P-001", "TYPE": "Spool", "ID": "SP-1"})
        original = Component.query.one().drawing_id
        imported({"DRAWING": "Q-777", "TYPE": "Spool", "ID": "SP-1"}, overwrite_approved=True)
        item = ReviewItem.query.filter_by(type="parent_document_change").one()

        resolved = review_queue_service.resolve_review(item.id, "lead", resolution={"action": "revert"})
        assert resolved["resolution"]["outcome"]["drawing_id"] == original
        assert Component.query.one().drawing_id == original


# ═════════════════════════════════════════════════════════════════════════════
# Operators
# ═════════════════════════════════════════════════════════════════════════════


class TestOperatorResolution:
    def test_resolving_verifies_operator(self, app, imported, project, monkeypatch):
        monkeypatch.setitem(app.config, "OPERATOR_VERIFY_THRESHOLD", 1)
        operator = register_operator(project.id, "K. Osei", "K-07")
        imported({"DRAWING": "P-001", "TYPE": "Field Weld", "ID": "W-1"})
        weld = Component.query.one()
        update_milestone(weld.id, "Fit-Up", "complete", "u1")
        _, _, reviews = update_milestone(weld.id, "Weld Made", "complete", "u1", metadata={"operator_id": operator["id"]})

        review_queue_service.resolve_review(reviews[0], "qa")
        verified = db.session.get(Operator, operator["id"])
        assert verified.status == "verified"
        assert verified.verified_by == "qa"
