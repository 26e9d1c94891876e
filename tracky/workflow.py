"""
tracky/workflow.py

Approval workflow for assets and trackers (one implementation, parameterized by kind).

States (stored as `approvalState`):
    unapproved -> approved -> edit_requested -> edit_approved -> approved ...

- create (supervisor): new entity starts unapproved.
- approve (supervisor, any state): approved; clears any pending request or grant.
  Approving an already-approved entity is a no-op.
- update: supervisors write directly in every state; operators only while a
  one-time grant is open. Any write in `edit_approved` consumes the grant.
- request_edit (operator, approved entities only): stages `proposedChanges`,
  replacing an earlier request or unused grant.
- approve_edit (supervisor): applies the staged changes AND opens a one-time
  grant so the operator can follow up with what cannot be staged (images).
- delete (supervisor, any state): removes the document, then its media.

Every read-check-write commits with a compare-and-set on the revision that was
read, so two concurrent transitions on one entity cannot both succeed.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

try:
    from tracky.config import IS_DEV
    from tracky.errors import (
        DependencyFailure,
        Forbidden,
        InvalidArgument,
        NotFound,
        PreconditionFailed,
        TrackyError,
    )
    from tracky.ledger import LocationLedger
    from tracky.media import ImageUpload, MediaCoordinator, validate_image
    from tracky.models import Actor, ApprovalState, EntityKind, Operation
    from tracky.rbac import can_transition
    from tracky.store import SERVER_TIMESTAMP, EntityStore
    from tracky.validation import normalize_fields, parse_position, validate_entity_id
    from tracky.valuation import (
        DEFAULT_DEPRECIATION_RATE,
        VALUATION_FIELDS,
        format_date,
        price_for_document,
    )
except ModuleNotFoundError:
    from config import IS_DEV
    from errors import (
        DependencyFailure,
        Forbidden,
        InvalidArgument,
        NotFound,
        PreconditionFailed,
        TrackyError,
    )
    from ledger import LocationLedger
    from media import ImageUpload, MediaCoordinator, validate_image
    from models import Actor, ApprovalState, EntityKind, Operation
    from rbac import can_transition
    from store import SERVER_TIMESTAMP, EntityStore
    from validation import normalize_fields, parse_position, validate_entity_id
    from valuation import (
        DEFAULT_DEPRECIATION_RATE,
        VALUATION_FIELDS,
        format_date,
        price_for_document,
    )


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def state_of(doc: Dict[str, Any]) -> ApprovalState:
    return ApprovalState(doc.get("approvalState", ApprovalState.unapproved.value))


# Partial-update fragments (None removes a field)
CLEAR_REQUEST = {"editRequestedBy": None, "editRequestedAt": None, "proposedChanges": None}
CLEAR_GRANT = {"editApprovedBy": None, "editApprovedAt": None}


class ApprovalWorkflow:
    """
    Operation surface of the core.

    Args:
        store: Entity Store Adapter
        media: Media Lifecycle Coordinator
        clock: Valuation clock (injectable for tests)
    """

    def __init__(
        self,
        store: EntityStore,
        media: MediaCoordinator,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.media = media
        self.clock = clock
        self.ledger = LocationLedger(store)

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def _authorize(self, actor: Actor, state: Optional[ApprovalState], op: Operation, kind: EntityKind) -> None:
        if can_transition(actor.role, state, op):
            return

        if op is Operation.update and actor.is_operator:
            if state is not None and state.is_approved:
                message = f"You need supervisor approval to edit this {kind.value}"
            else:
                message = f"Only supervisors can edit an unapproved {kind.value}"
        elif op is Operation.request_edit:
            if actor.is_operator:
                message = f"Edit requests apply only to approved {kind.value}s"
            else:
                message = "Only operators can request edit access"
        else:
            message = f"{actor.role.value} may not {op.value.replace('_', ' ')} {kind.value}s"

        print(f"[WORKFLOW] Denied: actor={actor.actor_id} role={actor.role.value} "
              f"op={op.value} kind={kind.value} state={state.value if state else None}")
        raise Forbidden(message)

    @staticmethod
    def _check_revision(kind: EntityKind, doc: Dict[str, Any], expected_revision: Optional[int]) -> None:
        if expected_revision is not None and int(expected_revision) != doc["revision"]:
            raise PreconditionFailed(
                f"Stale revision for {kind.value} {doc['id']}: "
                f"expected {expected_revision}, current {doc['revision']}"
            )

    def _load(self, kind: EntityKind, entity_id: str, actor: Actor, op: Operation,
              expected_revision: Optional[int] = None) -> Dict[str, Any]:
        current = self.store.get(kind, entity_id)
        self._authorize(actor, state_of(current), op, kind)
        self._check_revision(kind, current, expected_revision)
        return current

    # ------------------------------------------------------------------
    # Derived fields
    # ------------------------------------------------------------------

    def _check_tracker_ref(self, changes: Dict[str, Any]) -> None:
        tracker_id = changes.get("trackerId")
        if tracker_id and not self.store.exists(EntityKind.tracker, tracker_id):
            raise NotFound(f"Tracker {tracker_id} not found")

    def _prepare_changes(self, kind: EntityKind, current: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
        """Normalized changes plus recomputed currentPrice when a valuation field moves."""
        partial = dict(changes)
        if kind is EntityKind.asset:
            self._check_tracker_ref(changes)
            if any(field in changes for field in VALUATION_FIELDS):
                merged = {**current, **changes}
                partial["currentPrice"] = price_for_document(merged, self.clock())
        return partial

    def present(self, kind: EntityKind, doc: Dict[str, Any], include_history: bool = False,
                positions: Optional[Dict[str, Dict[str, Any]]] = None) -> Dict[str, Any]:
        """
        Caller-facing view: approval flags, read-time valuation, current position.

        `positions` is a prefetched tracker id -> position map (listings); when
        absent the tracker's position is read on its own.
        """
        state = state_of(doc)
        view = dict(doc)
        view["approvalState"] = state.value
        view["approved"] = state.is_approved
        view["editRequested"] = state is ApprovalState.edit_requested
        view["editApproved"] = state is ApprovalState.edit_approved

        if kind is EntityKind.asset:
            view["currentPrice"] = price_for_document(doc, self.clock())
        else:
            if positions is None:
                view.update(self.ledger.latest(doc["id"]))
            else:
                view.update(positions.get(doc["id"], {}))
            if include_history:
                view["locationHistory"] = {
                    str(ts): [lon, lat] for ts, (lon, lat) in self.ledger.history(doc["id"]).items()
                }
        return view

    # ------------------------------------------------------------------
    # Back-references (independent writes, no cross-entity atomicity)
    # ------------------------------------------------------------------

    def _set_back_reference(self, kind: EntityKind, entity_id: str, field: str, value: Optional[str],
                            only_if: Optional[str] = None) -> None:
        try:
            doc = self.store.get(kind, entity_id)
            if only_if is not None and doc.get(field) != only_if:
                return
            if doc.get(field) == value:
                return
            # Clearing is conditional on the pointer read above; setting is a plain merge
            expected = doc["revision"] if only_if is not None else None
            self.store.update(kind, entity_id, {field: value}, expected_revision=expected)
        except (NotFound, PreconditionFailed, DependencyFailure) as e:
            print(f"[WORKFLOW] Back-reference {kind.value}.{field} on {entity_id} not repaired: {e.message}")

    def _sync_tracker_link(self, asset_id: str, old_tracker_id: Optional[str], new_tracker_id: Optional[str]) -> None:
        if old_tracker_id == new_tracker_id:
            return
        if old_tracker_id:
            self._set_back_reference(EntityKind.tracker, old_tracker_id, "assetId", None, only_if=asset_id)
        if new_tracker_id:
            self._set_back_reference(EntityKind.tracker, new_tracker_id, "assetId", asset_id)

    def _detach_assets(self, tracker_id: str) -> None:
        # Runs after the tracker delete committed; failures are logged only
        try:
            linked = self.store.list(EntityKind.asset, {"trackerId": tracker_id})
        except DependencyFailure as e:
            print(f"[WORKFLOW] Assets linked to tracker {tracker_id} not detached: {e.message}")
            return
        for asset in linked:
            self._set_back_reference(EntityKind.asset, asset["id"], "trackerId", None, only_if=tracker_id)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create_entity(
        self,
        kind: EntityKind,
        actor: Actor,
        fields: Dict[str, Any],
        entity_id: Optional[str] = None,
        image: Optional[ImageUpload] = None,
        initial_location: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Create an unapproved entity.

        Args:
            entity_id: Client-supplied id (checked for uniqueness) or None to generate one
            image: Optional image; published with its QR code before the document write
            initial_location: {"timestamp", "longitude", "latitude"} seeding the
                ledger of a mobile tracker

        Raises:
            Forbidden, InvalidArgument, NotFound (trackerId), PreconditionFailed
            (id taken, location on a non-mobile tracker), DependencyFailure
        """
        self._authorize(actor, None, Operation.create, kind)

        if entity_id is not None:
            entity_id = validate_entity_id(entity_id)
        changes = normalize_fields(kind, fields, creating=True)
        if image is not None:
            validate_image(image)

        position = None
        if initial_location and any(v is not None for v in initial_location.values()):
            if kind is not EntityKind.tracker:
                raise InvalidArgument("Only trackers carry a location")
            position = parse_position(
                initial_location.get("timestamp"),
                initial_location.get("longitude"),
                initial_location.get("latitude"),
            )
            if changes.get("mobile") is not True:
                raise PreconditionFailed("Location history is only kept for mobile trackers")

        if kind is EntityKind.asset:
            now = self.clock()
            changes.setdefault("originalPrice", 0.0)
            changes.setdefault("depreciationRate", DEFAULT_DEPRECIATION_RATE.value)
            changes.setdefault("depreciationValue", 0.0)
            changes.setdefault("purchaseDate", format_date(now))
            self._check_tracker_ref(changes)
            changes["currentPrice"] = price_for_document(changes, now)
        else:
            changes.setdefault("mobile", False)

        if entity_id is not None and self.store.exists(kind, entity_id):
            raise PreconditionFailed(f"{kind.value.capitalize()} {entity_id} already exists")
        entity_id = entity_id or self.store.new_id()

        media_fields: Dict[str, str] = {}
        if image is not None:
            media_fields = self.media.publish(kind, entity_id, 1, image)

        doc = {
            **changes,
            **media_fields,
            "createdBy": actor.actor_id,
            "approvalState": ApprovalState.unapproved.value,
        }
        try:
            created = self.store.create(kind, entity_id, doc)
        except TrackyError:
            self.media.discard(media_fields.values())
            raise

        if position is not None:
            try:
                self.store.append_location(entity_id, *position)
            except TrackyError:
                # Undo the create so the caller sees all or nothing
                self.store.delete(kind, entity_id)
                self.media.discard(media_fields.values())
                raise

        if kind is EntityKind.asset:
            self._sync_tracker_link(entity_id, None, changes.get("trackerId"))

        print(f"[WORKFLOW] Created {kind.value} id={entity_id} by={actor.actor_id}")
        return self.present(kind, created, include_history=True)

    def get_entity(self, kind: EntityKind, entity_id: str, actor: Actor) -> Dict[str, Any]:
        doc = self._load(kind, entity_id, actor, Operation.read)
        return self.present(kind, doc, include_history=True)

    def list_entities(self, kind: EntityKind, actor: Actor,
                      filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """All entities of a kind; `filters` match on the presented view (e.g. approved=True)."""
        self._authorize(actor, None, Operation.list, kind)
        docs = self.store.list(kind)
        positions = self.ledger.latest_by_tracker() if kind is EntityKind.tracker else None
        views = [self.present(kind, doc, positions=positions) for doc in docs]
        if filters:
            views = [v for v in views if all(v.get(k) == want for k, want in filters.items())]
        if IS_DEV:
            print(f"[WORKFLOW] List {kind.value}: filters={filters} results={len(views)}")
        return views

    def update_entity(
        self,
        kind: EntityKind,
        entity_id: str,
        actor: Actor,
        fields: Optional[Dict[str, Any]] = None,
        image: Optional[ImageUpload] = None,
        expected_revision: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Direct write. Supervisors: any state. Operators: only under a one-time grant.

        A write in `edit_approved` (by either role) consumes the grant.
        New media is published before the write and discarded if the write fails;
        superseded media is discarded after the write commits.
        """
        current = self._load(kind, entity_id, actor, Operation.update, expected_revision)

        changes = normalize_fields(kind, fields or {}, creating=False)
        if not changes and image is None:
            raise InvalidArgument("No changes supplied")
        if image is not None:
            validate_image(image)

        partial = self._prepare_changes(kind, current, changes)
        if state_of(current) is ApprovalState.edit_approved:
            partial.update(CLEAR_GRANT)
            partial["approvalState"] = ApprovalState.approved.value

        media_fields: Dict[str, str] = {}
        if image is not None:
            media_fields = self.media.publish(kind, current["id"], current["revision"] + 1, image)
            partial.update(media_fields)

        try:
            updated = self.store.update(kind, current["id"], partial, expected_revision=current["revision"])
        except TrackyError:
            self.media.discard(media_fields.values())
            raise

        if media_fields:
            self.media.discard_for(current)
        if kind is EntityKind.asset and "trackerId" in changes:
            self._sync_tracker_link(current["id"], current.get("trackerId"), changes.get("trackerId"))

        print(f"[WORKFLOW] Updated {kind.value} id={current['id']} by={actor.actor_id} "
              f"fields={sorted(changes)} image={image is not None}")
        return self.present(kind, updated, include_history=True)

    def delete_entity(self, kind: EntityKind, entity_id: str, actor: Actor) -> None:
        """Remove the document, then (best-effort) its media and the other side's back-reference."""
        self._load(kind, entity_id, actor, Operation.delete)
        removed = self.store.delete(kind, entity_id)

        self.media.discard_for(removed)
        if kind is EntityKind.asset:
            self._sync_tracker_link(removed["id"], removed.get("trackerId"), None)
        else:
            self._detach_assets(removed["id"])

        print(f"[WORKFLOW] Deleted {kind.value} id={removed['id']} by={actor.actor_id}")

    def request_edit(
        self,
        kind: EntityKind,
        entity_id: str,
        actor: Actor,
        proposed: Optional[Dict[str, Any]] = None,
        expected_revision: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Stage proposed changes on an approved entity (operators only). Replaces any prior request."""
        current = self._load(kind, entity_id, actor, Operation.request_edit, expected_revision)

        changes = normalize_fields(kind, proposed or {}, creating=False)
        if kind is EntityKind.asset:
            self._check_tracker_ref(changes)

        partial = {
            **CLEAR_GRANT,
            "approvalState": ApprovalState.edit_requested.value,
            "editRequestedBy": actor.actor_id,
            "editRequestedAt": SERVER_TIMESTAMP,
            "proposedChanges": changes,
        }
        updated = self.store.update(kind, current["id"], partial, expected_revision=current["revision"])

        print(f"[WORKFLOW] Edit requested on {kind.value} id={current['id']} by={actor.actor_id} "
              f"fields={sorted(changes)}")
        return self.present(kind, updated, include_history=True)

    def approve_edit(
        self,
        kind: EntityKind,
        entity_id: str,
        actor: Actor,
        expected_revision: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Apply the staged changes and open a one-time edit grant (supervisors only)."""
        current = self._load(kind, entity_id, actor, Operation.approve_edit, expected_revision)
        if state_of(current) is not ApprovalState.edit_requested:
            raise PreconditionFailed("no edit request")

        changes = normalize_fields(kind, current.get("proposedChanges") or {}, creating=False)
        partial = self._prepare_changes(kind, current, changes)
        partial.update(CLEAR_REQUEST)
        partial.update({
            "approvalState": ApprovalState.edit_approved.value,
            "editApprovedBy": actor.actor_id,
            "editApprovedAt": SERVER_TIMESTAMP,
        })
        updated = self.store.update(kind, current["id"], partial, expected_revision=current["revision"])

        if kind is EntityKind.asset and "trackerId" in changes:
            self._sync_tracker_link(current["id"], current.get("trackerId"), changes.get("trackerId"))

        print(f"[WORKFLOW] Edit approved on {kind.value} id={current['id']} by={actor.actor_id} "
              f"applied={sorted(changes)}")
        return self.present(kind, updated, include_history=True)

    def approve(
        self,
        kind: EntityKind,
        entity_id: str,
        actor: Actor,
        expected_revision: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Mark approved, dropping any pending request or grant. Idempotent."""
        current = self._load(kind, entity_id, actor, Operation.approve, expected_revision)
        if state_of(current) is ApprovalState.approved:
            return self.present(kind, current, include_history=True)

        partial = {
            **CLEAR_REQUEST,
            **CLEAR_GRANT,
            "approvalState": ApprovalState.approved.value,
            "approvedBy": actor.actor_id,
            "approvedAt": SERVER_TIMESTAMP,
        }
        updated = self.store.update(kind, current["id"], partial, expected_revision=current["revision"])

        print(f"[WORKFLOW] Approved {kind.value} id={current['id']} by={actor.actor_id}")
        return self.present(kind, updated, include_history=True)

    def append_location(self, tracker_id: str, actor: Actor, timestamp: Any,
                        longitude: Any, latitude: Any) -> Dict[str, Any]:
        self._authorize(actor, None, Operation.append_location, EntityKind.tracker)
        return self.ledger.append(tracker_id, timestamp, longitude, latitude)

    def location_history(self, tracker_id: str, actor: Actor) -> Dict[str, List[float]]:
        self._load(EntityKind.tracker, tracker_id, actor, Operation.read)
        return {str(ts): [lon, lat] for ts, (lon, lat) in self.ledger.history(tracker_id).items()}
