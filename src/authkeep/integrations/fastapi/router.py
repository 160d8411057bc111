"""FastAPI auth router — factory that creates the token and account endpoints for an AuthKeep instance."""

import uuid
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Body, Depends, HTTPException, Request, Response

from authkeep.core.schemas import (
    AddEmailRequest,
    AuthenticatedUser,
    ChangePasswordRequest,
    CodeRequest,
    CompleteAccountRequest,
    EmailRequest,
    GrantResponse,
    PasswordGrantRequest,
    RefreshGrantRequest,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    SessionMetadata,
    SessionResponse,
    TokenRequest,
    UserProfile,
)
from authkeep.errors import AuthError

if TYPE_CHECKING:
    from authkeep.authkeep import AuthKeep


def _auth_error_detail(e: AuthError) -> dict:
    """Build HTTPException detail dict from an AuthError."""
    detail = {"error": e.code, "message": e.message}
    if e.extra:
        detail.update(e.extra)
    return detail


def _session_metadata(request: Request) -> SessionMetadata:
    """Device name and client address, preferring the headers set by the frontend proxy."""
    device_name = request.headers.get("X-User-Agent") or request.headers.get("User-Agent")
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
    else:
        ip = request.client.host if request.client else None
    return SessionMetadata(device_name=device_name, ip=ip)


def create_auth_router(auth: "AuthKeep") -> APIRouter:
    """Create a FastAPI router with the token and account endpoints.

    Args:
        auth: The AuthKeep instance the endpoints delegate to.
    """
    router = APIRouter(tags=["auth"])
    current_user_dep = auth.current_user

    @router.post("/oauth/token", response_model=GrantResponse)
    async def token_endpoint(
        data: Annotated[TokenRequest, Body(discriminator="grant_type")],
        request: Request,
    ):
        """OAuth2 token endpoint: password, refresh_token and assertion grants."""
        metadata = _session_metadata(request)
        try:
            if isinstance(data, PasswordGrantRequest):
                return await auth.issue_tokens_for_password_grant(data.email, data.password, metadata)
            if isinstance(data, RefreshGrantRequest):
                return await auth.issue_tokens_for_refresh_grant(data.refresh_token, metadata)
            return await auth.issue_tokens_for_assertion_grant(data.provider, data.code, metadata)
        except AuthError as e:
            raise HTTPException(status_code=e.status_code, detail=_auth_error_detail(e))

    @router.post("/register", response_model=RegisterResponse, status_code=201)
    async def register_endpoint(data: RegisterRequest, request: Request):
        """Register with username, email and password. Sends a verification code."""
        try:
            return await auth.register_user(
                data.username, data.email, data.password, _session_metadata(request),
            )
        except AuthError as e:
            raise HTTPException(status_code=e.status_code, detail=_auth_error_detail(e))

    @router.get("/me", response_model=UserProfile)
    async def me_endpoint(
        user: Annotated[AuthenticatedUser, Depends(current_user_dep)],
    ):
        """Get the current authenticated user's profile."""
        try:
            return await auth.get_profile(user.user_id)
        except AuthError as e:
            raise HTTPException(status_code=e.status_code, detail=_auth_error_detail(e))

    # ------ Sessions ------

    @router.get("/sessions", response_model=list[SessionResponse])
    async def list_sessions_endpoint(
        user: Annotated[AuthenticatedUser, Depends(current_user_dep)],
    ):
        """List the current user's active sessions, most recently used first."""
        try:
            sessions = await auth.list_sessions(user.user_id)
        except AuthError as e:
            raise HTTPException(status_code=e.status_code, detail=_auth_error_detail(e))
        return [SessionResponse.from_data(s) for s in sessions]

    @router.delete("/sessions/{session_id}", status_code=204)
    async def revoke_session_endpoint(
        session_id: uuid.UUID,
        user: Annotated[AuthenticatedUser, Depends(current_user_dep)],
    ):
        """Revoke one of the current user's sessions (sign a device out)."""
        try:
            await auth.revoke_session(user.user_id, session_id)
        except AuthError as e:
            raise HTTPException(status_code=e.status_code, detail=_auth_error_detail(e))
        return Response(status_code=204)

    # ------ Email ------

    @router.post("/emails", status_code=201)
    async def add_email_endpoint(
        data: AddEmailRequest,
        user: Annotated[AuthenticatedUser, Depends(current_user_dep)],
    ):
        """Attach another address to the account and send it a verification code."""
        try:
            await auth.add_email(user.user_id, data.email, data.password)
        except AuthError as e:
            raise HTTPException(status_code=e.status_code, detail=_auth_error_detail(e))
        return {"message": "Verification code sent."}

    @router.post("/email/verify/request")
    async def request_verification_endpoint(
        data: EmailRequest,
        user: Annotated[AuthenticatedUser, Depends(current_user_dep)],
    ):
        """Send (or resend) a verification code for one of the user's addresses."""
        try:
            await auth.generate_and_send_verification_otp(user.user_id, data.email)
        except AuthError as e:
            raise HTTPException(status_code=e.status_code, detail=_auth_error_detail(e))
        return {"message": "Verification code sent."}

    @router.post("/email/verify")
    async def verify_email_endpoint(
        data: CodeRequest,
        user: Annotated[AuthenticatedUser, Depends(current_user_dep)],
    ):
        """Verify an email address with the code sent to it."""
        try:
            email = await auth.consume_verification_otp(user.user_id, data.code)
        except AuthError as e:
            raise HTTPException(status_code=e.status_code, detail=_auth_error_detail(e))
        return {"email": email, "verified": True}

    # ------ Password ------

    @router.post("/password/forgot")
    async def forgot_password_endpoint(data: EmailRequest):
        """Request a password reset code."""
        try:
            await auth.generate_and_send_reset_otp(data.email)
        except AuthError as e:
            raise HTTPException(status_code=e.status_code, detail=_auth_error_detail(e))
        return {"message": "If an account exists, a reset code has been sent."}

    @router.post("/password/reset", status_code=204)
    async def reset_password_endpoint(data: ResetPasswordRequest):
        """Set a new password with a reset code. Signs out every session."""
        try:
            await auth.reset_password(data.code, data.password)
        except AuthError as e:
            raise HTTPException(status_code=e.status_code, detail=_auth_error_detail(e))
        return Response(status_code=204)

    @router.post("/password/change", status_code=204)
    async def change_password_endpoint(
        data: ChangePasswordRequest,
        user: Annotated[AuthenticatedUser, Depends(current_user_dep)],
    ):
        """Change the password. Other sessions are signed out, this one stays."""
        try:
            await auth.change_password(
                user.user_id, data.old_password, data.new_password,
                keep_session=user.session_id,
            )
        except AuthError as e:
            raise HTTPException(status_code=e.status_code, detail=_auth_error_detail(e))
        return Response(status_code=204)

    @router.post("/account/complete", status_code=204)
    async def complete_account_endpoint(
        data: CompleteAccountRequest,
        user: Annotated[AuthenticatedUser, Depends(current_user_dep)],
    ):
        """Choose the username and/or password left pending by an OAuth sign-up."""
        try:
            await auth.complete_account(
                user.user_id, username=data.username, password=data.password,
            )
        except AuthError as e:
            raise HTTPException(status_code=e.status_code, detail=_auth_error_detail(e))
        return Response(status_code=204)

    return router
