"""
tracky/test_workflow.py

Tests for the approval workflow (assets and trackers share one implementation).

Tests:
1. Approval gating and the one-time edit grant
2. Edit request / approve-edit protocol
3. Idempotent approve
4. Valuation recomputed on price-affecting changes
5. Media ordering: publish before write, cleanup after commit, best-effort deletes
6. Asset <-> tracker back-references

Run: pytest tracky/test_workflow.py -v
"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from tracky.errors import DependencyFailure, Forbidden, InvalidArgument, NotFound, PreconditionFailed
from tracky.models import EntityKind


def make_asset(workflow, supervisor, approved=False, **fields):
    fields.setdefault("name", "Excavator")
    view = workflow.create_entity(EntityKind.asset, supervisor, fields)
    if approved:
        view = workflow.approve(EntityKind.asset, view["id"], supervisor)
    return view


# ========================================================================
# CREATE / READ
# ========================================================================

class TestCreate:
    def test_asset_defaults(self, workflow, supervisor, now):
        view = make_asset(workflow, supervisor)
        assert view["approved"] is False
        assert view["approvalState"] == "unapproved"
        assert view["createdBy"] == "sup-1"
        assert view["originalPrice"] == 0
        assert view["depreciationRate"] == "daily"
        assert view["purchaseDate"] == "2024-06-01T12:00:00Z"
        assert view["currentPrice"] == 0

    def test_yearly_valuation_on_create(self, workflow, supervisor, now):
        view = make_asset(
            workflow, supervisor,
            originalPrice=1000, depreciationRate="yearly", depreciationValue=10,
            purchaseDate=(now - timedelta(days=730)).isoformat(),
        )
        assert view["currentPrice"] == pytest.approx(800)

    def test_only_supervisors_create(self, workflow, operator, viewer):
        for actor in (operator, viewer):
            with pytest.raises(Forbidden):
                workflow.create_entity(EntityKind.asset, actor, {"name": "x"})

    def test_name_is_required_for_assets(self, workflow, supervisor):
        with pytest.raises(InvalidArgument):
            workflow.create_entity(EntityKind.asset, supervisor, {"description": "nameless"})

    def test_caller_cannot_set_governance_fields(self, workflow, supervisor):
        with pytest.raises(InvalidArgument) as exc:
            workflow.create_entity(EntityKind.asset, supervisor, {"name": "x", "approved": True})
        assert "approved" in exc.value.message
        with pytest.raises(InvalidArgument):
            workflow.create_entity(EntityKind.asset, supervisor, {"name": "x", "currentPrice": 5})

    def test_client_supplied_id_must_be_unused(self, workflow, supervisor):
        workflow.create_entity(EntityKind.tracker, supervisor, {"name": "T"}, entity_id="trk-9")
        with pytest.raises(PreconditionFailed) as exc:
            workflow.create_entity(EntityKind.tracker, supervisor, {"name": "T2"}, entity_id="trk-9")
        assert "already exists" in exc.value.message

    def test_bad_entity_id(self, workflow, supervisor):
        with pytest.raises(InvalidArgument):
            workflow.create_entity(EntityKind.tracker, supervisor, {}, entity_id="has/slash")

    def test_unknown_tracker_reference(self, workflow, supervisor):
        with pytest.raises(NotFound):
            make_asset(workflow, supervisor, trackerId="missing")

    def test_extra_scalar_attributes_are_kept(self, workflow, supervisor):
        view = workflow.create_entity(EntityKind.tracker, supervisor, {"name": "T", "serialNumber": "SN-1"})
        assert view["serialNumber"] == "SN-1"
        assert view["mobile"] is False

    def test_read_time_valuation(self, store, blobs, supervisor, now):
        """Reads value the asset at read time, not at the last write."""
        from tracky.media import MediaCoordinator
        from tracky.workflow import ApprovalWorkflow

        clock = {"now": now}
        wf = ApprovalWorkflow(store, MediaCoordinator(blobs), clock=lambda: clock["now"])
        view = make_asset(wf, supervisor, originalPrice=100, depreciationValue=10, purchaseDate=now.isoformat())
        assert view["currentPrice"] == 100

        clock["now"] = now + timedelta(days=2)
        assert wf.get_entity(EntityKind.asset, view["id"], supervisor)["currentPrice"] == pytest.approx(80)


# ========================================================================
# APPROVAL GATING
# ========================================================================

class TestApprovalGating:
    def test_operator_update_on_approved_is_forbidden(self, workflow, supervisor, operator):
        asset = make_asset(workflow, supervisor, approved=True)
        for payload in ({"name": "new"}, {"description": "d"}, {"originalPrice": 5}):
            with pytest.raises(Forbidden):
                workflow.update_entity(EntityKind.asset, asset["id"], operator, fields=payload)
        assert workflow.get_entity(EntityKind.asset, asset["id"], operator)["name"] == "Excavator"

    def test_operator_update_on_unapproved_is_forbidden(self, workflow, supervisor, operator):
        asset = make_asset(workflow, supervisor)
        with pytest.raises(Forbidden):
            workflow.update_entity(EntityKind.asset, asset["id"], operator, fields={"name": "new"})

    def test_viewer_cannot_write(self, workflow, supervisor, viewer):
        asset = make_asset(workflow, supervisor, approved=True)
        with pytest.raises(Forbidden):
            workflow.update_entity(EntityKind.asset, asset["id"], viewer, fields={"name": "new"})
        with pytest.raises(Forbidden):
            workflow.delete_entity(EntityKind.asset, asset["id"], viewer)

    def test_supervisor_updates_approved_directly(self, workflow, supervisor):
        asset = make_asset(workflow, supervisor, approved=True)
        view = workflow.update_entity(EntityKind.asset, asset["id"], supervisor, fields={"name": "Crane"})
        assert view["name"] == "Crane"
        assert view["approved"] is True

    def test_empty_update_is_rejected(self, workflow, supervisor):
        asset = make_asset(workflow, supervisor)
        with pytest.raises(InvalidArgument):
            workflow.update_entity(EntityKind.asset, asset["id"], supervisor, fields={})

    def test_stale_revision(self, workflow, supervisor):
        asset = make_asset(workflow, supervisor)
        workflow.update_entity(EntityKind.asset, asset["id"], supervisor, fields={"name": "B"})
        with pytest.raises(PreconditionFailed):
            workflow.update_entity(
                EntityKind.asset, asset["id"], supervisor, fields={"name": "C"},
                expected_revision=asset["revision"],
            )

    def test_missing_entity(self, workflow, supervisor):
        with pytest.raises(NotFound):
            workflow.update_entity(EntityKind.tracker, "ghost", supervisor, fields={"name": "x"})


# ========================================================================
# EDIT REQUEST PROTOCOL
# ========================================================================

class TestEditRequests:
    def test_request_on_unapproved_is_forbidden(self, workflow, supervisor, operator):
        asset = make_asset(workflow, supervisor)
        with pytest.raises(Forbidden):
            workflow.request_edit(EntityKind.asset, asset["id"], operator, {"name": "x"})

    def test_supervisor_cannot_request(self, workflow, supervisor):
        asset = make_asset(workflow, supervisor, approved=True)
        with pytest.raises(Forbidden):
            workflow.request_edit(EntityKind.asset, asset["id"], supervisor, {"name": "x"})

    def test_approve_edit_without_request(self, workflow, supervisor):
        asset = make_asset(workflow, supervisor, approved=True)
        with pytest.raises(PreconditionFailed) as exc:
            workflow.approve_edit(EntityKind.asset, asset["id"], supervisor)
        assert exc.value.message == "no edit request"

    def test_request_stages_without_applying(self, workflow, supervisor, operator):
        asset = make_asset(workflow, supervisor, approved=True)
        view = workflow.request_edit(EntityKind.asset, asset["id"], operator, {"name": "Bulldozer"})
        assert view["name"] == "Excavator"
        assert view["editRequested"] is True
        assert view["editRequestedBy"] == "op-1"
        assert view["proposedChanges"] == {"name": "Bulldozer"}
        assert isinstance(view["editRequestedAt"], int)

    def test_second_request_overwrites_first(self, workflow, supervisor, operator):
        asset = make_asset(workflow, supervisor, approved=True)
        workflow.request_edit(EntityKind.asset, asset["id"], operator, {"name": "First"})
        view = workflow.request_edit(EntityKind.asset, asset["id"], operator, {"description": "Second"})
        assert view["proposedChanges"] == {"description": "Second"}

    def test_invalid_proposal_is_rejected_up_front(self, workflow, supervisor, operator):
        asset = make_asset(workflow, supervisor, approved=True)
        with pytest.raises(InvalidArgument):
            workflow.request_edit(EntityKind.asset, asset["id"], operator, {"originalPrice": -3})

    def test_approve_edit_applies_and_grants(self, workflow, supervisor, operator):
        asset = make_asset(workflow, supervisor, approved=True, originalPrice=100)
        workflow.request_edit(EntityKind.asset, asset["id"], operator, {"originalPrice": 250})
        view = workflow.approve_edit(EntityKind.asset, asset["id"], supervisor)
        assert view["originalPrice"] == 250
        assert view["currentPrice"] == 250
        assert view["editApproved"] is True
        assert view["editRequested"] is False
        assert view["editApprovedBy"] == "sup-1"
        assert "proposedChanges" not in view

    def test_edit_grant_is_single_use(self, workflow, supervisor, operator):
        asset = make_asset(workflow, supervisor, approved=True)
        workflow.request_edit(EntityKind.asset, asset["id"], operator, {})
        workflow.approve_edit(EntityKind.asset, asset["id"], supervisor)

        view = workflow.update_entity(EntityKind.asset, asset["id"], operator, fields={"name": "Grader"})
        assert view["name"] == "Grader"
        assert view["editApproved"] is False
        assert "editApprovedBy" not in view

        with pytest.raises(Forbidden):
            workflow.update_entity(EntityKind.asset, asset["id"], operator, fields={"name": "Again"})

    def test_supervisor_write_consumes_grant(self, workflow, supervisor, operator):
        asset = make_asset(workflow, supervisor, approved=True)
        workflow.request_edit(EntityKind.asset, asset["id"], operator, {})
        workflow.approve_edit(EntityKind.asset, asset["id"], supervisor)
        view = workflow.update_entity(EntityKind.asset, asset["id"], supervisor, fields={"name": "S"})
        assert view["editApproved"] is False
        with pytest.raises(Forbidden):
            workflow.update_entity(EntityKind.asset, asset["id"], operator, fields={"name": "late"})

    def test_tracker_uses_the_same_protocol(self, workflow, supervisor, operator):
        workflow.create_entity(EntityKind.tracker, supervisor, {"name": "T"}, entity_id="t1")
        workflow.approve(EntityKind.tracker, "t1", supervisor)
        workflow.request_edit(EntityKind.tracker, "t1", operator, {"plateNumber": "B 1234 XY"})
        view = workflow.approve_edit(EntityKind.tracker, "t1", supervisor)
        assert view["plateNumber"] == "B 1234 XY"


# ========================================================================
# APPROVE
# ========================================================================

class TestApprove:
    def test_approve_is_idempotent(self, workflow, supervisor):
        asset = make_asset(workflow, supervisor)
        first = workflow.approve(EntityKind.asset, asset["id"], supervisor)
        second = workflow.approve(EntityKind.asset, asset["id"], supervisor)
        assert first["approved"] is second["approved"] is True
        assert second["revision"] == first["revision"], "second approve writes nothing"
        assert second["approvedBy"] == "sup-1"

    def test_approve_clears_pending_request(self, workflow, supervisor, operator):
        asset = make_asset(workflow, supervisor, approved=True)
        workflow.request_edit(EntityKind.asset, asset["id"], operator, {"name": "x"})
        view = workflow.approve(EntityKind.asset, asset["id"], supervisor)
        assert view["approvalState"] == "approved"
        assert "proposedChanges" not in view
        assert view["name"] == "Excavator"

    def test_operator_cannot_approve(self, workflow, supervisor, operator):
        asset = make_asset(workflow, supervisor)
        with pytest.raises(Forbidden):
            workflow.approve(EntityKind.asset, asset["id"], operator)

    def test_list_filter_on_approved(self, workflow, supervisor, viewer):
        make_asset(workflow, supervisor, name="A")
        approved = make_asset(workflow, supervisor, approved=True, name="B")
        views = workflow.list_entities(EntityKind.asset, viewer, {"approved": True})
        assert [v["id"] for v in views] == [approved["id"]]


# ========================================================================
# VALUATION ON UPDATE
# ========================================================================

class TestValuationOnUpdate:
    def test_price_fields_recompute(self, workflow, supervisor, now):
        asset = make_asset(workflow, supervisor, originalPrice=1000, depreciationRate="yearly",
                           depreciationValue=10, purchaseDate=now.isoformat())
        view = workflow.update_entity(
            EntityKind.asset, asset["id"], supervisor,
            fields={"purchaseDate": (now - timedelta(days=365)).isoformat()},
        )
        assert view["currentPrice"] == pytest.approx(900)
        stored = workflow.store.get(EntityKind.asset, asset["id"])
        assert stored["currentPrice"] == pytest.approx(900)

    def test_valuation_fields_cannot_be_cleared(self, workflow, supervisor):
        asset = make_asset(workflow, supervisor)
        with pytest.raises(InvalidArgument):
            workflow.update_entity(EntityKind.asset, asset["id"], supervisor, fields={"originalPrice": None})


# ========================================================================
# MEDIA
# ========================================================================

class TestMedia:
    def test_image_and_qr_on_create(self, workflow, supervisor, blobs, png):
        view = workflow.create_entity(EntityKind.asset, supervisor, {"name": "Cam"}, image=png)
        prefix = f"memory://assets/{view['id']}/"
        assert view["imageURL"].startswith(prefix + "image-v1-")
        token = view["imageURL"][len(prefix + "image-v1-"):-len(".png")]
        assert view["qrCode"] == f"{prefix}qr-v1-{token}.png"
        assert blobs.blobs[view["qrCode"]] == f"QR:{view['imageURL']}".encode()

    def test_no_image_no_qr(self, workflow, supervisor):
        view = make_asset(workflow, supervisor)
        assert "imageURL" not in view
        assert "qrCode" not in view

    def test_bad_image_is_rejected_before_any_write(self, workflow, supervisor, blobs):
        from tracky.media import ImageUpload

        with pytest.raises(InvalidArgument):
            workflow.create_entity(EntityKind.asset, supervisor, {"name": "Cam"},
                                   image=ImageUpload("notes.txt", b"hello"))
        assert blobs.blobs == {}
        assert workflow.list_entities(EntityKind.asset, supervisor) == []

    def test_qr_upload_failure_leaves_nothing(self, workflow, supervisor, blobs, png):
        blobs.fail_put_on.append("qr-")
        with pytest.raises(DependencyFailure):
            workflow.create_entity(EntityKind.asset, supervisor, {"name": "Cam"}, image=png)
        assert blobs.blobs == {}
        assert workflow.list_entities(EntityKind.asset, supervisor) == []

    def test_replacement_discards_old_media_after_commit(self, workflow, supervisor, blobs, png):
        view = workflow.create_entity(EntityKind.asset, supervisor, {"name": "Cam"}, image=png)
        old = (view["imageURL"], view["qrCode"])
        updated = workflow.update_entity(EntityKind.asset, view["id"], supervisor, image=png)
        assert "/image-v2-" in updated["imageURL"]
        assert set(blobs.deleted) == set(old)
        assert set(blobs.blobs) == {updated["imageURL"], updated["qrCode"]}

    def test_failed_write_discards_new_media(self, workflow, supervisor, blobs, png, monkeypatch):
        view = workflow.create_entity(EntityKind.asset, supervisor, {"name": "Cam"}, image=png)

        def store_down(*args, **kwargs):
            raise DependencyFailure("Record store unavailable during update asset")

        monkeypatch.setattr(workflow.store, "update", store_down)
        with pytest.raises(DependencyFailure):
            workflow.update_entity(EntityKind.asset, view["id"], supervisor, image=png)
        assert set(blobs.blobs) == {view["imageURL"], view["qrCode"]}
        assert any("/image-v2-" in url for url in blobs.deleted)

    def test_racing_image_updates_keep_the_winners_media(self, workflow, supervisor, blobs, png):
        view = workflow.create_entity(EntityKind.asset, supervisor, {"name": "Cam"})
        real_put = blobs.put
        winner = {}

        def put_then_race(data, path, content_type="application/octet-stream"):
            url = real_put(data, path, content_type)
            if not winner:
                winner["started"] = True
                winner["view"] = workflow.update_entity(EntityKind.asset, view["id"], supervisor, image=png)
            return url

        with patch.object(blobs, "put", side_effect=put_then_race), pytest.raises(PreconditionFailed):
            workflow.update_entity(EntityKind.asset, view["id"], supervisor, image=png)

        stored = workflow.store.get(EntityKind.asset, view["id"])
        assert stored["imageURL"] == winner["view"]["imageURL"]
        assert set(blobs.blobs) == {stored["imageURL"], stored["qrCode"]}

    def test_racing_creates_with_one_id_keep_the_winners_media(self, workflow, supervisor, blobs, png):
        real_put = blobs.put
        winner = {}

        def put_then_race(data, path, content_type="application/octet-stream"):
            url = real_put(data, path, content_type)
            if not winner:
                winner["started"] = True
                winner["view"] = workflow.create_entity(
                    EntityKind.asset, supervisor, {"name": "First"}, entity_id="cam-1", image=png
                )
            return url

        with patch.object(blobs, "put", side_effect=put_then_race), pytest.raises(PreconditionFailed):
            workflow.create_entity(EntityKind.asset, supervisor, {"name": "Second"}, entity_id="cam-1", image=png)

        stored = workflow.store.get(EntityKind.asset, "cam-1")
        assert stored["name"] == "First"
        assert set(blobs.blobs) == {stored["imageURL"], stored["qrCode"]}

    def test_delete_removes_media(self, workflow, supervisor, blobs, png):
        view = workflow.create_entity(EntityKind.asset, supervisor, {"name": "Cam"}, image=png)
        workflow.delete_entity(EntityKind.asset, view["id"], supervisor)
        assert blobs.blobs == {}
        with pytest.raises(NotFound):
            workflow.get_entity(EntityKind.asset, view["id"], supervisor)

    def test_delete_succeeds_when_blob_cleanup_fails(self, workflow, supervisor, blobs, png):
        view = workflow.create_entity(EntityKind.asset, supervisor, {"name": "Cam"}, image=png)
        blobs.fail_delete = True
        workflow.delete_entity(EntityKind.asset, view["id"], supervisor)
        assert not workflow.store.exists(EntityKind.asset, view["id"])

    def test_delete_in_any_state(self, workflow, supervisor, operator):
        asset = make_asset(workflow, supervisor, approved=True)
        workflow.request_edit(EntityKind.asset, asset["id"], operator, {"name": "x"})
        workflow.delete_entity(EntityKind.asset, asset["id"], supervisor)
        assert workflow.list_entities(EntityKind.asset, supervisor) == []


# ========================================================================
# BACK-REFERENCES
# ========================================================================

class TestTrackerLink:
    def test_link_sets_tracker_back_reference(self, workflow, supervisor):
        workflow.create_entity(EntityKind.tracker, supervisor, {"name": "T"}, entity_id="t1")
        asset = make_asset(workflow, supervisor, trackerId="t1")
        assert workflow.get_entity(EntityKind.tracker, "t1", supervisor)["assetId"] == asset["id"]

    def test_relink_moves_back_reference(self, workflow, supervisor):
        workflow.create_entity(EntityKind.tracker, supervisor, {"name": "T1"}, entity_id="t1")
        workflow.create_entity(EntityKind.tracker, supervisor, {"name": "T2"}, entity_id="t2")
        asset = make_asset(workflow, supervisor, trackerId="t1")
        workflow.update_entity(EntityKind.asset, asset["id"], supervisor, fields={"trackerId": "t2"})
        assert "assetId" not in workflow.get_entity(EntityKind.tracker, "t1", supervisor)
        assert workflow.get_entity(EntityKind.tracker, "t2", supervisor)["assetId"] == asset["id"]

    def test_deleting_tracker_detaches_assets(self, workflow, supervisor):
        workflow.create_entity(EntityKind.tracker, supervisor, {"name": "T"}, entity_id="t1")
        asset = make_asset(workflow, supervisor, trackerId="t1")
        workflow.delete_entity(EntityKind.tracker, "t1", supervisor)
        assert "trackerId" not in workflow.get_entity(EntityKind.asset, asset["id"], supervisor)

    def test_tracker_delete_stands_when_detach_scan_fails(self, workflow, supervisor, monkeypatch):
        workflow.create_entity(EntityKind.tracker, supervisor, {"name": "T"}, entity_id="t1")
        make_asset(workflow, supervisor, trackerId="t1")

        def store_down(*args, **kwargs):
            raise DependencyFailure("Record store unavailable during list asset")

        monkeypatch.setattr(workflow.store, "list", store_down)
        workflow.delete_entity(EntityKind.tracker, "t1", supervisor)
        assert not workflow.store.exists(EntityKind.tracker, "t1")

    def test_deleting_asset_clears_tracker(self, workflow, supervisor):
        workflow.create_entity(EntityKind.tracker, supervisor, {"name": "T"}, entity_id="t1")
        asset = make_asset(workflow, supervisor, trackerId="t1")
        workflow.delete_entity(EntityKind.asset, asset["id"], supervisor)
        assert "assetId" not in workflow.get_entity(EntityKind.tracker, "t1", supervisor)
