import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from .audit import log_audit
from .models import DonorSupportReply, DonorSupportRequest

logger = logging.getLogger(__name__)

CATEGORIES = ('payment', 'plan', 'account', 'general', 'other')
STATUSES = ('open', 'in_progress', 'resolved', 'closed')
PRIORITIES = ('low', 'normal', 'high', 'urgent')


class SupportRequestService:
    """Admin handling of donor support requests."""

    def __init__(self, db_session: Session, messaging=None):
        self.db = db_session
        self.messaging = messaging

    def _get(self, request_id: int) -> DonorSupportRequest:
        request = self.db.get(DonorSupportRequest, request_id)
        if request is None:
            raise LookupError(f"Support request {request_id} not found")
        return request

    def list_requests(
        self,
        status: Optional[str] = None,
        category: Optional[str] = None,
        priority: Optional[str] = None
    ) -> List[DonorSupportRequest]:
        query = self.db.query(DonorSupportRequest)
        if status in STATUSES:
            query = query.filter(DonorSupportRequest.status == status)
        if category in CATEGORIES:
            query = query.filter(DonorSupportRequest.category == category)
        if priority in PRIORITIES:
            query = query.filter(DonorSupportRequest.priority == priority)
        return query.order_by(DonorSupportRequest.created_at.desc()).all()

    def get_request(self, request_id: int) -> Dict:
        request = self._get(request_id)
        replies = self.db.query(DonorSupportReply).filter_by(request_id=request_id).order_by(
            DonorSupportReply.created_at
        ).all()
        return {'request': request, 'replies': replies}

    def count_by_status(self) -> Dict[str, int]:
        counts = {status: 0 for status in STATUSES}
        for request in self.db.query(DonorSupportRequest.status).all():
            if request.status in counts:
                counts[request.status] += 1
        return counts

    def add_reply(self, request_id: int, admin_id: int, message: str, is_internal: bool = False) -> DonorSupportReply:
        """Add a reply or internal note; an open request moves to in_progress."""
        message = (message or '').strip()
        if not message:
            raise ValueError("Reply message is required")

        request = self._get(request_id)
        try:
            reply = DonorSupportReply(
                request_id=request_id,
                user_id=admin_id,
                message=message,
                is_internal=is_internal
            )
            self.db.add(reply)
            if request.status == 'open':
                request.status = 'in_progress'
            log_audit(self.db, 'support_request', request_id, 'reply', user_id=admin_id,
                      after={'internal': is_internal})
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error adding reply to support request {request_id}: {str(e)}")
            raise

        if not is_internal and self.messaging is not None:
            result = self.messaging.send_to_donor(
                request.donor_id,
                f"Reply to your support request #{request.id} ({request.subject}): {message}",
                source_type='support_reply'
            )
            if not result.get('success'):
                logger.warning(f"Could not notify donor {request.donor_id} of reply: {result.get('error')}")

        return reply

    def update_status(self, request_id: int, status: str, admin_id: int) -> DonorSupportRequest:
        if status not in STATUSES:
            raise ValueError(f"Invalid status: {status}")

        request = self._get(request_id)
        request.status = status
        if status in ('resolved', 'closed'):
            request.resolved_at = datetime.utcnow()
            request.resolved_by = admin_id
        else:
            request.resolved_at = None
            request.resolved_by = None

        log_audit(self.db, 'support_request', request_id, 'update_status', user_id=admin_id,
                  after={'status': status})
        self.db.commit()
        return request

    def update_priority(self, request_id: int, priority: str) -> DonorSupportRequest:
        if priority not in PRIORITIES:
            raise ValueError(f"Invalid priority: {priority}")
        request = self._get(request_id)
        request.priority = priority
        self.db.commit()
        return request

    def assign(self, request_id: int, admin_id: Optional[int]) -> DonorSupportRequest:
        """Assign to an admin; a falsy admin_id clears the assignment."""
        request = self._get(request_id)
        request.assigned_to = admin_id or None
        self.db.commit()
        return request

    def add_note(self, request_id: int, note: str) -> DonorSupportRequest:
        request = self._get(request_id)
        request.admin_notes = (note or '').strip()
        self.db.commit()
        return request
