from fastapi import APIRouter, Depends, HTTPException, Query

from medcheckout.auth import verify_token
from medcheckout.database import SessionLocal
from medcheckout.fanout import retry_failure
from medcheckout.models import FanoutFailure

router = APIRouter(prefix="/api/admin", dependencies=[Depends(verify_token)])


def serialize_failure(failure: FanoutFailure) -> dict:
    return {
        "id": failure.id,
        "integration": failure.integration,
        "paymentIntentId": failure.payment_intent_id,
        "error": failure.error,
        "attempts": failure.attempts,
        "resolved": failure.resolved,
        "createdAt": failure.created_at.isoformat() if failure.created_at else None,
        "updatedAt": failure.updated_at.isoformat() if failure.updated_at else None,
    }


@router.get("/fanout-failures")
def list_failures(include_resolved: bool = Query(False)):
    db = SessionLocal()
    try:
        query = db.query(FanoutFailure)
        if not include_resolved:
            query = query.filter_by(resolved=False)
        failures = query.order_by(FanoutFailure.created_at.desc()).all()
        return {"failures": [serialize_failure(f) for f in failures]}
    finally:
        db.close()


@router.post("/fanout-failures/{failure_id}/retry")
def retry(failure_id: int):
    failure = retry_failure(failure_id)
    if failure is None:
        raise HTTPException(status_code=404, detail="Failure not found")
    return serialize_failure(failure)
