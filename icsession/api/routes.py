from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from icsession.api.schemas import (
    Envelope,
    LinkIdentityRequest,
    LoginRequest,
    MFAEnrollResponse,
    PasswordChangeRequest,
    PrincipalResponse,
    RefreshRequest,
    RegisterRequest,
    RevokeRequest,
    RevokeResponse,
    SessionTokensResponse,
    SessionView,
    StepUpRequest,
    StepUpResponse,
    StepUpVerifyRequest,
    StepUpVerifyResponse,
)
from icsession.logging import get_logger, short_id
from icsession.service.errors import (
    AuthenticationError,
    ErrorCode,
    ForbiddenError,
)
from icsession.service.runtime import get_runtime
from icsession.service.tokens import IssuedTokens
from icsession.service.verifier import (
    FederatedAssertion,
    PasswordCredential,
    lockout_key,
)
from icsession.storage.models import AssuranceLevel, Principal, Session, hash_refresh_token

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


@dataclass
class SessionContext:
    session_id: str
    principal_id: str
    assurance_level: AssuranceLevel


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("malformed authorization header")
    return token.strip()


async def get_session_context(
    request: Request,
    authorization: Optional[str] = Header(None),
    x_session_id: Optional[str] = Header(None, alias="X-Session-ID"),
) -> SessionContext:
    """Resolve the caller's session from a bearer access token or an ``X-Session-ID`` header."""
    runtime = get_runtime()
    token = _bearer_token(authorization)
    if token:
        claims = await runtime.tokens.validate_access_token(token)
        return SessionContext(claims.session_id, claims.principal_id, claims.assurance_level)
    if x_session_id:
        await runtime.limiter.allow(_client_key(request), "session_check")
        session = await runtime.sso.check_session(x_session_id)
        return SessionContext(session.id, session.principal_id, session.assurance_level)
    raise AuthenticationError("missing session credentials")


def _tokens_response(issued: IssuedTokens) -> SessionTokensResponse:
    return SessionTokensResponse(
        principal_id=issued.session.principal_id,
        session_id=issued.session.id,
        session_expires_at=issued.session.expires_at,
        assurance_level=issued.session.assurance_level.value,
        access_token=issued.access_token,
        access_expires_at=issued.access_expires_at,
        refresh_token=issued.refresh_token,
        refresh_expires_at=issued.refresh_expires_at,
        rotation_counter=issued.rotation_counter,
        token_type=issued.token_type,
    )


def _session_view(session: Session) -> SessionView:
    return SessionView(
        session_id=session.id,
        principal_id=session.principal_id,
        state=session.state,
        assurance_level=session.assurance_level.value,
        created_at=session.created_at,
        expires_at=session.expires_at,
        last_refreshed_at=session.last_refreshed_at,
        observers=sorted(session.observers),
    )


def _principal_view(principal: Principal) -> PrincipalResponse:
    return PrincipalResponse(
        principal_id=principal.id,
        identifier=principal.identifier,
        verified_factors=sorted(principal.verified_factors),
        linked_issuers=sorted(principal.linked_identities),
        created_at=principal.created_at,
    )


async def _require_assurance(ctx: SessionContext, operation: str) -> Session:
    runtime = get_runtime()
    session = await runtime.sso.check_session(ctx.session_id, consistent=True)
    await runtime.mfa.ensure_assurance(session, operation)
    return session


@router.post("/principals", response_model=Envelope, status_code=201, tags=["principals"])
async def register_principal(body: RegisterRequest, request: Request):
    """Create a principal with a password credential.

    Raises:
        409: If the identifier is already registered
        429: If the caller exceeds the login rate limit
    """
    runtime = get_runtime()
    await runtime.limiter.allow(f"register:{_client_key(request)}", "login")
    principal = await runtime.verifier.register(body.identifier, body.password)
    return Envelope(status="ok", data=_principal_view(principal))


@router.post("/sessions", response_model=Envelope, status_code=201, tags=["sessions"])
async def login(
    body: LoginRequest,
    x_federation_key: Optional[str] = Header(None, alias="X-Federation-Key"),
):
    """Verify a credential and open a new session.

    Password logins send ``identifier`` and ``password``. Federated logins
    send an ``assertion`` and must carry the federation layer's key.

    Raises:
        401: If the credential is invalid
        403: If the identifier is locked out or the application is not trusted
        429: If the login rate limit is exceeded
    """
    runtime = get_runtime()
    if body.application_id and not runtime.sso.is_trusted(body.application_id):
        raise ForbiddenError(
            "application is not part of the trust domain",
            error_code=ErrorCode.APPLICATION_NOT_TRUSTED,
        )
    if body.assertion is not None:
        runtime.verifier.check_federation_key(x_federation_key)
        credential = FederatedAssertion(
            issuer=body.assertion.issuer,
            subject=body.assertion.subject,
            claims=body.assertion.claims,
        )
        rate_key = f"federated:{body.assertion.issuer}|{body.assertion.subject}"
    else:
        credential = PasswordCredential(identifier=body.identifier, password=body.password)
        rate_key = lockout_key(body.identifier)
    await runtime.limiter.allow(rate_key, "login")

    principal_id = await runtime.verifier.verify(credential)
    issued = await runtime.tokens.issue_session(principal_id, application_id=body.application_id)
    return Envelope(status="ok", data=_tokens_response(issued))


@router.post("/sessions/refresh", response_model=Envelope, tags=["sessions"])
async def refresh_session(
    body: RefreshRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    x_request_id: Optional[str] = Header(None, alias="X-Request-ID"),
):
    """Redeem a refresh token for a new access/refresh pair.

    Clients must send an ``Idempotency-Key`` (or their own ``X-Request-ID``)
    to retry safely. A retry carrying the same key gets the same replacement,
    even when the first attempt timed out or the connection dropped after the
    token was spent. A second use without the key revokes the session.

    Raises:
        401: If the token is unknown or the session expired
        403: If the session was revoked
        409: If the token was already used (the session is now revoked)
    """
    runtime = get_runtime()
    await runtime.limiter.allow(hash_refresh_token(body.refresh_token)[:32], "refresh")
    issued = await runtime.tokens.refresh(
        body.refresh_token, request_id=idempotency_key or x_request_id
    )
    return Envelope(status="ok", data=_tokens_response(issued))


@router.get("/sessions/current", response_model=Envelope, tags=["sessions"])
async def current_session(
    ctx: SessionContext = Depends(get_session_context),
    x_application_id: Optional[str] = Header(None, alias="X-Application-ID"),
    consistent: bool = Query(False),
):
    """Report the caller's session; with ``X-Application-ID`` the application joins it."""
    runtime = get_runtime()
    if x_application_id:
        session = await runtime.sso.observe(ctx.session_id, x_application_id)
    else:
        session = await runtime.sso.check_session(ctx.session_id, consistent=consistent)
    return Envelope(status="ok", data=_session_view(session))


@router.post("/sessions/revoke", response_model=Envelope, tags=["sessions"])
async def revoke_sessions(
    body: RevokeRequest,
    ctx: SessionContext = Depends(get_session_context),
):
    """Log out the current session everywhere, or every session of the principal.

    ``scope=principal`` needs an MFA-verified session.
    """
    runtime = get_runtime()
    if body.scope == "principal":
        await _require_assurance(ctx, "revoke_all_sessions")
        except_id = ctx.session_id if body.keep_current else None
        revoked = await runtime.sso.logout_principal(ctx.principal_id, except_session_id=except_id)
    else:
        session = await runtime.sso.logout_everywhere(ctx.session_id)
        revoked = [session.id]
    logger.info(
        "revoke_requested",
        scope=body.scope,
        session_id=short_id(ctx.session_id),
        count=len(revoked),
    )
    return Envelope(status="ok", data=RevokeResponse(scope=body.scope, revoked_session_ids=revoked))


@router.post("/mfa/challenge", response_model=Envelope, tags=["mfa"])
async def require_step_up(
    body: StepUpRequest,
    ctx: SessionContext = Depends(get_session_context),
):
    runtime = get_runtime()
    decision = await runtime.mfa.require_step_up(ctx.session_id, body.operation)
    return Envelope(
        status="ok",
        data=StepUpResponse(
            operation=decision.operation,
            passthrough=decision.passthrough,
            challenge_id=decision.challenge_id,
            expires_at=decision.expires_at,
        ),
    )


@router.post("/mfa/verify", response_model=Envelope, tags=["mfa"])
async def complete_step_up(
    body: StepUpVerifyRequest,
    ctx: SessionContext = Depends(get_session_context),
):
    """Answer a challenge with a TOTP code; success returns an MFA-verified access token."""
    runtime = get_runtime()
    result = await runtime.mfa.complete_step_up(
        body.challenge_id, body.code, session_id=ctx.session_id
    )
    return Envelope(
        status="ok",
        data=StepUpVerifyResponse(
            session_id=result.session.id,
            operation=result.operation,
            assurance_level=result.session.assurance_level.value,
            access_token=result.access_token,
            access_expires_at=result.access_expires_at,
        ),
    )


@router.post("/mfa/enroll", response_model=Envelope, status_code=201, tags=["mfa"])
async def enroll_mfa(ctx: SessionContext = Depends(get_session_context)):
    """Start TOTP enrollment; confirm it by completing an ``enroll_mfa`` challenge."""
    runtime = get_runtime()
    principal = await runtime.verifier.get_principal(ctx.principal_id)
    enrollment = await runtime.mfa.enroll(principal.id, label=principal.identifier)
    return Envelope(
        status="ok",
        data=MFAEnrollResponse(otpauth_uri=enrollment.otpauth_uri, secret=enrollment.secret),
    )


@router.post("/principals/identities", response_model=Envelope, tags=["principals"])
async def link_identity(
    body: LinkIdentityRequest,
    ctx: SessionContext = Depends(get_session_context),
):
    runtime = get_runtime()
    await _require_assurance(ctx, "link_identity")
    principal = await runtime.verifier.link_identity(ctx.principal_id, body.issuer, body.subject)
    return Envelope(status="ok", data=_principal_view(principal))


@router.post("/principals/password", response_model=Envelope, tags=["principals"])
async def change_password(
    body: PasswordChangeRequest,
    ctx: SessionContext = Depends(get_session_context),
):
    """Replace the password; every other session of the principal is revoked."""
    runtime = get_runtime()
    await _require_assurance(ctx, "change_password")
    await runtime.verifier.change_password(ctx.principal_id, body.current_password, body.new_password)
    revoked = await runtime.sso.logout_principal(ctx.principal_id, except_session_id=ctx.session_id)
    return Envelope(
        status="ok", data=RevokeResponse(scope="principal", revoked_session_ids=revoked)
    )


@router.post("/principals/deactivate", response_model=Envelope, tags=["principals"])
async def deactivate_principal(ctx: SessionContext = Depends(get_session_context)):
    runtime = get_runtime()
    await _require_assurance(ctx, "deactivate_principal")
    principal = await runtime.verifier.deactivate(ctx.principal_id)
    await runtime.sso.logout_principal(principal.id)
    return Envelope(status="ok", data=_principal_view(principal))
