"""
Administrative endpoints.

Endpoints:
    POST /api/admin/notifications/dispatch: Deliver pending notifications now
"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from .. import auth, schemas
from ..database import get_db

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.post("/notifications/dispatch", response_model=schemas.DispatchSummary)
def dispatch_notifications(
    request: Request,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin),
):
    """Retry delivery of every pending or previously failed notification (admin)."""
    result = request.app.state.dispatcher.dispatch_pending(db)
    return schemas.DispatchSummary(sent=result.sent, failed=result.failed)
