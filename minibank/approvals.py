"""
Approval Workflow Module

Dual-control approval requests gating activation of newly created customers
and accounts. A request starts PENDING and is resolved exactly once to
APPROVED or REJECTED; the side effect on the gated entity runs in the same
unit of work as the status transition, dispatched through the
ApprovalTarget registered for the request's entity type.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Iterable
from enum import Enum
import uuid

from .audit import AuditTrail, AuditEventType
from .config import get_config, resolve_acting_user
from .errors import (
    ApprovalRequestNotFound, DuplicatePendingRequest, MissingReason,
    NotPending, RequestTypeMismatch, SelfReviewNotAllowed
)
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


logger = get_logger("minibank.approvals")


class ApprovalRequestType(Enum):
    """What is being approved"""
    CUSTOMER_CREATION = "customer_creation"
    ACCOUNT_OPENING = "account_opening"


class EntityType(Enum):
    """Kind of entity gated by a request"""
    CUSTOMER = "customer"
    ACCOUNT = "account"


class ApprovalStatus(Enum):
    """Request states; APPROVED and REJECTED are terminal"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# Entity type gated by each request type
REQUEST_ENTITY_TYPES = {
    ApprovalRequestType.CUSTOMER_CREATION: EntityType.CUSTOMER,
    ApprovalRequestType.ACCOUNT_OPENING: EntityType.ACCOUNT,
}


@dataclass
class ApprovalRequest(StorageRecord):
    """
    A request for a second user to approve or reject an entity
    """
    request_type: ApprovalRequestType
    entity_type: EntityType
    entity_id: str
    requested_by: str
    requested_date: datetime
    approval_status: ApprovalStatus = ApprovalStatus.PENDING
    request_notes: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_date: Optional[datetime] = None
    review_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    branch_id: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.approval_status == ApprovalStatus.PENDING


@dataclass
class ApprovalFilter:
    """Optional criteria for pending-request queries"""
    request_type: Optional[ApprovalRequestType] = None
    entity_type: Optional[EntityType] = None
    branch_id: Optional[str] = None

    def to_filters(self) -> Dict[str, str]:
        filters = {}
        if self.request_type:
            filters['request_type'] = self.request_type.value
        if self.entity_type:
            filters['entity_type'] = self.entity_type.value
        if self.branch_id:
            filters['branch_id'] = self.branch_id
        return filters


class ApprovalTarget(ABC):
    """
    Capability implemented per gated entity type.

    All hooks run inside the workflow's unit of work. ``activate`` and
    ``reject`` only accept an entity that is still inactive and pending
    approval, so each entity is resolved exactly once.
    """

    entity_type: EntityType

    @abstractmethod
    def require_awaiting_approval(self, entity_id: str) -> None:
        """
        Raises:
            NotFoundError: If the entity does not exist
            NotAwaitingApproval: If the entity was already resolved
        """
        pass

    @abstractmethod
    def activate(self, entity_id: str, reviewed_by: str) -> None:
        """Move the entity to its approved/active state"""
        pass

    @abstractmethod
    def reject(self, entity_id: str, reviewed_by: str, reason: str) -> None:
        """Move the entity to its rejected state"""
        pass


class ApprovalWorkflow:
    """
    Creates, reviews and queries approval requests
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 targets: Optional[Iterable[ApprovalTarget]] = None,
                 enforce_dual_control: Optional[bool] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "approval_requests"
        self._targets: Dict[EntityType, ApprovalTarget] = {}
        for target in targets or ():
            self.register_target(target)
        if enforce_dual_control is None:
            enforce_dual_control = get_config().enforce_dual_control
        self.enforce_dual_control = enforce_dual_control

    def register_target(self, target: ApprovalTarget) -> None:
        """Register the side-effect handler for one entity type"""
        self._targets[target.entity_type] = target

    def _target_for(self, entity_type: EntityType) -> ApprovalTarget:
        target = self._targets.get(entity_type)
        if not target:
            raise ValueError(f"No approval target registered for {entity_type.value}")
        return target

    def create_request(
        self,
        request_type: ApprovalRequestType,
        entity_type: EntityType,
        entity_id: str,
        requested_by: Optional[str] = None,
        notes: Optional[str] = None,
        branch_id: Optional[str] = None
    ) -> ApprovalRequest:
        """
        File a new PENDING approval request

        Raises:
            RequestTypeMismatch: If the request type does not gate this entity type
            DuplicatePendingRequest: If the entity already has a pending request
            NotFoundError: If the entity does not exist
            NotAwaitingApproval: If the entity was already approved or rejected
        """
        if REQUEST_ENTITY_TYPES[request_type] != entity_type:
            raise RequestTypeMismatch(
                f"{request_type.value} requests cannot gate a {entity_type.value}"
            )
        user = resolve_acting_user(requested_by)
        target = self._target_for(entity_type)

        def operation() -> ApprovalRequest:
            # Serializes request creation per entity
            self.storage.lock_record("approval_entities", f"{entity_type.value}:{entity_id}")
            if self.has_pending(entity_type, entity_id):
                raise DuplicatePendingRequest(
                    f"{entity_type.value} {entity_id} already has a pending approval request"
                )
            target.require_awaiting_approval(entity_id)

            now = datetime.now(timezone.utc)
            request = ApprovalRequest(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                request_type=request_type,
                entity_type=entity_type,
                entity_id=entity_id,
                requested_by=user,
                requested_date=now,
                request_notes=notes,
                branch_id=branch_id
            )
            self._save_request(request)

            self.audit_trail.log_event(
                event_type=AuditEventType.APPROVAL_REQUESTED,
                entity_type="approval_request",
                entity_id=request.id,
                metadata={
                    "request_type": request_type.value,
                    "entity_type": entity_type.value,
                    "entity_id": entity_id,
                },
                user_id=user
            )
            return request

        request = self.storage.run_in_transaction(operation)
        log_action(logger, "info", f"Approval requested for {entity_type.value} {entity_id}",
                   user_id=user, action="create_approval_request", resource=request.id,
                   extra={"request_type": request_type.value})
        return request

    def approve(self, request_id: str, reviewed_by: Optional[str] = None,
                notes: Optional[str] = None) -> ApprovalRequest:
        """
        Approve a pending request and activate the gated entity

        Raises:
            ApprovalRequestNotFound: If the request does not exist
            NotPending: If the request was already resolved
            SelfReviewNotAllowed: If the reviewer filed the request
        """
        reviewer = resolve_acting_user(reviewed_by)

        def operation() -> ApprovalRequest:
            request = self._lock_pending(request_id, reviewer)
            self._target_for(request.entity_type).activate(request.entity_id, reviewer)

            self._resolve(request, ApprovalStatus.APPROVED, reviewer, notes)
            self.audit_trail.log_event(
                event_type=AuditEventType.APPROVAL_APPROVED,
                entity_type="approval_request",
                entity_id=request.id,
                metadata={"entity_type": request.entity_type.value, "entity_id": request.entity_id},
                user_id=reviewer
            )
            return request

        request = self.storage.run_in_transaction(operation)
        log_action(logger, "info", f"Approved {request.request_type.value} request",
                   user_id=reviewer, action="approve_request", resource=request.id)
        return request

    def reject(self, request_id: str, reviewed_by: Optional[str] = None,
               rejection_reason: Optional[str] = None,
               notes: Optional[str] = None) -> ApprovalRequest:
        """
        Reject a pending request; a non-blank reason is required

        Raises:
            ApprovalRequestNotFound: If the request does not exist
            NotPending: If the request was already resolved
            MissingReason: If no rejection reason was given
            SelfReviewNotAllowed: If the reviewer filed the request
        """
        reviewer = resolve_acting_user(reviewed_by)

        def operation() -> ApprovalRequest:
            request = self._lock_pending(request_id, reviewer)
            if not rejection_reason or not rejection_reason.strip():
                raise MissingReason("Rejection reason is required")
            reason = rejection_reason.strip()

            self._target_for(request.entity_type).reject(request.entity_id, reviewer, reason)

            request.rejection_reason = reason
            self._resolve(request, ApprovalStatus.REJECTED, reviewer, notes)
            self.audit_trail.log_event(
                event_type=AuditEventType.APPROVAL_REJECTED,
                entity_type="approval_request",
                entity_id=request.id,
                metadata={
                    "entity_type": request.entity_type.value,
                    "entity_id": request.entity_id,
                    "rejection_reason": reason,
                },
                user_id=reviewer
            )
            return request

        request = self.storage.run_in_transaction(operation)
        log_action(logger, "info", f"Rejected {request.request_type.value} request",
                   user_id=reviewer, action="reject_request", resource=request.id,
                   extra={"rejection_reason": request.rejection_reason})
        return request

    def _lock_pending(self, request_id: str, reviewer: str) -> ApprovalRequest:
        self.storage.lock_record(self.table_name, request_id)
        request = self.get(request_id)
        if not request.is_pending:
            raise NotPending(
                f"Approval request {request_id} is already {request.approval_status.value}"
            )
        if self.enforce_dual_control and request.requested_by == reviewer:
            raise SelfReviewNotAllowed(
                f"{reviewer} cannot review a request they filed"
            )
        return request

    def _resolve(self, request: ApprovalRequest, status: ApprovalStatus,
                 reviewer: str, notes: Optional[str]) -> None:
        now = datetime.now(timezone.utc)
        request.approval_status = status
        request.reviewed_by = reviewer
        request.reviewed_date = now
        request.review_notes = notes
        request.updated_at = now
        self._save_request(request)

    def get(self, request_id: str) -> ApprovalRequest:
        """Get request by ID"""
        data = self.storage.load(self.table_name, request_id)
        if not data:
            raise ApprovalRequestNotFound(f"Approval request {request_id} not found")
        return self._request_from_dict(data)

    def list_pending(self, filter: Optional[ApprovalFilter] = None) -> List[ApprovalRequest]:
        """Pending requests matching the filter, newest first"""
        filters = filter.to_filters() if filter else {}
        filters['approval_status'] = ApprovalStatus.PENDING.value
        requests = [self._request_from_dict(data) for data in self.storage.find(self.table_name, filters)]
        requests.sort(key=lambda r: r.requested_date, reverse=True)
        return requests

    def count_pending(self, filter: Optional[ApprovalFilter] = None) -> int:
        return len(self.list_pending(filter))

    def has_pending(self, entity_type: EntityType, entity_id: str) -> bool:
        return bool(self.storage.find(self.table_name, {
            'entity_type': entity_type.value,
            'entity_id': entity_id,
            'approval_status': ApprovalStatus.PENDING.value,
        }))

    def get_requests_for_entity(self, entity_type: EntityType, entity_id: str) -> List[ApprovalRequest]:
        """Full request history of an entity, oldest first"""
        requests = [
            self._request_from_dict(data)
            for data in self.storage.find(self.table_name, {
                'entity_type': entity_type.value,
                'entity_id': entity_id,
            })
        ]
        requests.sort(key=lambda r: r.requested_date)
        return requests

    def _save_request(self, request: ApprovalRequest) -> None:
        self.storage.save(self.table_name, request.id, self._request_to_dict(request))

    def _request_to_dict(self, request: ApprovalRequest) -> Dict:
        result = request.to_dict()
        result['request_type'] = request.request_type.value
        result['entity_type'] = request.entity_type.value
        result['approval_status'] = request.approval_status.value
        result['requested_date'] = request.requested_date.isoformat()
        result['reviewed_date'] = request.reviewed_date.isoformat() if request.reviewed_date else None
        return result

    def _request_from_dict(self, data: Dict) -> ApprovalRequest:
        reviewed_date = None
        if data.get('reviewed_date'):
            reviewed_date = datetime.fromisoformat(data['reviewed_date'])

        return ApprovalRequest(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            request_type=ApprovalRequestType(data['request_type']),
            entity_type=EntityType(data['entity_type']),
            entity_id=data['entity_id'],
            requested_by=data['requested_by'],
            requested_date=datetime.fromisoformat(data['requested_date']),
            approval_status=ApprovalStatus(data['approval_status']),
            request_notes=data.get('request_notes'),
            reviewed_by=data.get('reviewed_by'),
            reviewed_date=reviewed_date,
            review_notes=data.get('review_notes'),
            rejection_reason=data.get('rejection_reason'),
            branch_id=data.get('branch_id')
        )
