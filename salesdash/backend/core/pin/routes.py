"""
FastAPI routes for PIN setup, verification, change and recovery.
The caller is identified by the Supabase access token from primary login.
"""

from fastapi import APIRouter, HTTPException, status, Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import logging

from ..auth.token import get_user_id
from .exceptions import LockedError, NotFoundError, StorageError, ValidationError
from .gate import VerificationGate
from .models import (
    AuditContext,
    PINVerificationResult,
    PinChangeRequest,
    PinResetRequest,
    PinSetupRequest,
    PinStatusResponse,
    PinVerifyRequest,
    RecoveryIssuedResponse,
)
from .recovery import RecoveryDelivery

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pin", tags=["pin"])
security = HTTPBearer()

def get_gate(request: Request) -> VerificationGate:
    """Gate instance wired by the application lifespan."""
    gate = getattr(request.app.state, "pin_gate", None)
    if gate is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="PIN service not initialized"
        )
    return gate

def get_current_user_id(credentials: HTTPAuthorizationCredentials = Depends(security)) -> str:
    """Resolve the user from the bearer token."""
    user_id = get_user_id(credentials.credentials)
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired session"
        )
    return user_id

def get_audit_context(request: Request) -> AuditContext:
    """Client IP and user agent for the audit log."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
    else:
        ip = request.client.host if request.client else None
    return AuditContext(ip_address=ip, user_agent=request.headers.get("user-agent"))

def _raise_http(e: Exception) -> None:
    """Translate PIN errors into HTTP errors."""
    if isinstance(e, ValidationError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    if isinstance(e, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="PIN not set up")
    if isinstance(e, LockedError):
        raise HTTPException(
            status_code=status.HTTP_423_LOCKED,
            detail={
                "error": "PIN locked",
                "locked_until": e.locked_until.isoformat() if e.locked_until else None
            }
        )
    if isinstance(e, StorageError):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="PIN service temporarily unavailable"
        )
    raise e

@router.get("/status", response_model=PinStatusResponse)
async def pin_status(
    user_id: str = Depends(get_current_user_id),
    gate: VerificationGate = Depends(get_gate)
) -> PinStatusResponse:
    """Current PIN state for the signed-in user."""
    try:
        return await gate.status(user_id)
    except StorageError as e:
        _raise_http(e)

@router.post("/verify", response_model=PINVerificationResult)
async def verify_pin(
    body: PinVerifyRequest,
    user_id: str = Depends(get_current_user_id),
    gate: VerificationGate = Depends(get_gate),
    context: AuditContext = Depends(get_audit_context)
) -> PINVerificationResult:
    """
    Verify the PIN for the signed-in user.

    Returns:
        Verification result; failed attempts report the remaining count and
        lockouts report when they end

    Raises:
        HTTPException: 400 malformed PIN, 404 no PIN set, 503 storage failure
    """
    try:
        result = await gate.verify(user_id, body.pin, context)
    except (ValidationError, NotFoundError, StorageError) as e:
        _raise_http(e)

    if not result.success:
        logger.warning(f"PIN verification failed for user {user_id} (attempts={result.attempts}, locked={result.is_locked})")
    return result

@router.post("/setup", status_code=status.HTTP_201_CREATED)
async def setup_pin(
    body: PinSetupRequest,
    user_id: str = Depends(get_current_user_id),
    gate: VerificationGate = Depends(get_gate),
    context: AuditContext = Depends(get_audit_context)
):
    """First-time PIN setup."""
    try:
        await gate.set_pin(user_id, body.pin, context=context)
    except (ValidationError, StorageError) as e:
        _raise_http(e)
    return {"message": "PIN set up successfully"}

@router.post("/change")
async def change_pin(
    body: PinChangeRequest,
    user_id: str = Depends(get_current_user_id),
    gate: VerificationGate = Depends(get_gate),
    context: AuditContext = Depends(get_audit_context)
):
    """
    Change the PIN using the current one.

    Raises:
        HTTPException: 401 wrong current PIN, 423 locked out
    """
    try:
        changed = await gate.set_pin(user_id, body.new_pin, current_pin=body.current_pin, context=context)
    except (ValidationError, NotFoundError, LockedError, StorageError) as e:
        _raise_http(e)

    if not changed:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid current PIN"
        )
    return {"message": "PIN changed successfully"}

@router.post("/recovery", status_code=status.HTTP_202_ACCEPTED, response_model=RecoveryIssuedResponse)
async def request_recovery(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    gate: VerificationGate = Depends(get_gate)
) -> RecoveryIssuedResponse:
    """
    Issue a recovery token and hand it to the delivery channel.
    The response is identical whether or not a PIN exists.
    """
    delivery: RecoveryDelivery = getattr(request.app.state, "recovery_delivery", None)
    if delivery is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="PIN recovery is not configured"
        )

    try:
        token = await gate.request_recovery(user_id)
    except NotFoundError:
        logger.info(f"Recovery requested for user {user_id} without a PIN")
        return RecoveryIssuedResponse()
    except StorageError as e:
        _raise_http(e)

    try:
        await delivery.deliver(user_id, token)
    except StorageError as e:
        _raise_http(e)
    return RecoveryIssuedResponse()

@router.post("/reset")
async def reset_pin(
    body: PinResetRequest,
    user_id: str = Depends(get_current_user_id),
    gate: VerificationGate = Depends(get_gate),
    context: AuditContext = Depends(get_audit_context)
):
    """Reset the PIN with a recovery token; clears any lockout."""
    try:
        reset = await gate.set_pin(user_id, body.new_pin, recovery_token=body.recovery_token, context=context)
    except NotFoundError:
        reset = False
    except (ValidationError, StorageError) as e:
        _raise_http(e)

    if not reset:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid or expired recovery token"
        )
    return {"message": "PIN reset successfully"}

@router.get("/health")
async def health_check():
    """Health check endpoint for the PIN service."""
    return {"status": "healthy", "service": "pin"}
