import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select, func

from conftest import fetch_otps, wrong_code
from roboclub.models.otp_code import OtpPurpose
from roboclub.models.user import User
from roboclub.services.otp_service import OtpService
from roboclub.services.registration import (
    RegistrationOrchestrator,
    RegistrationInput,
    RegistrationError,
    RegistrationState,
)
from roboclub.utils.security import decode_token

pytestmark = pytest.mark.anyio

MEMBER = {"name": "Ada Lovelace", "email": "ada@uni.edu", "password": "engines1"}


async def _user_count(session_factory, email: str) -> int:
    async with session_factory() as session:
        result = await session.execute(select(func.count()).select_from(User).where(User.email == email))
        return result.scalar_one()


async def _request_code(client, outbox, email: str = MEMBER["email"]) -> str:
    resp = await client.post("/api/auth/send-otp", json={"email": email, "purpose": "registration"})
    assert resp.status_code == 200
    return outbox.last_code(email)


async def test_send_otp_step_validates_details(client):
    resp = await client.post("/api/auth/register", json={**MEMBER, "step": "send_otp"})

    assert resp.status_code == 200
    assert resp.json() == {
        "success": True,
        "message": "Validation successful. Please verify your email.",
        "step": "verify_otp",
        "state": "AWAITING_OTP",
    }


@pytest.mark.parametrize(
    "body, message",
    [
        ({"email": "ada@uni.edu", "password": "engines1"}, "Name, email, and password are required"),
        ({"name": "Ada", "email": "ada@uni", "password": "engines1"}, "Please provide a valid email address"),
        ({"name": "Ada", "email": "ada@uni.edu", "password": "short"}, "Password must be at least 6 characters long"),
    ],
)
async def test_send_otp_step_rejects_bad_details(client, body, message):
    resp = await client.post("/api/auth/register", json={**body, "step": "send_otp"})

    assert resp.status_code == 400
    assert resp.json()["message"] == message
    assert resp.json()["state"] == "FAILED"


async def test_unknown_step_is_rejected(client):
    resp = await client.post("/api/auth/register", json={**MEMBER, "step": "skip_ahead"})

    assert resp.status_code == 400
    assert resp.json()["message"] == "Invalid registration step"


async def test_complete_registration_creates_account(client, outbox, session_factory):
    code = await _request_code(client, outbox)

    resp = await client.post(
        "/api/auth/register",
        json={**MEMBER, "email": "Ada@Uni.edu", "otp": code, "step": "complete_registration"},
    )

    assert resp.status_code == 201
    body = resp.json()
    assert body["success"] is True
    assert body["state"] == "COMPLETE"
    assert body["message"] == "Account created successfully! Welcome to GROBOTS!"
    assert body["user"]["email"] == "ada@uni.edu"
    assert body["user"]["name"] == "Ada Lovelace"
    assert body["user"]["role"] == "member"
    assert "password" not in body["user"]
    assert "password_hash" not in body["user"]

    claims = decode_token(body["token"])
    assert claims["sub"] == body["user"]["id"]
    assert claims["email"] == "ada@uni.edu"
    assert claims["exp"] - claims["iat"] == int(timedelta(days=7).total_seconds())

    assert await _user_count(session_factory, "ada@uni.edu") == 1
    assert await fetch_otps(session_factory, "ada@uni.edu") == []


async def test_existing_account_conflicts(client, outbox):
    code = await _request_code(client, outbox)
    first = await client.post(
        "/api/auth/register", json={**MEMBER, "otp": code, "step": "complete_registration"}
    )
    assert first.status_code == 201

    again = await client.post("/api/auth/register", json={**MEMBER, "step": "send_otp"})
    assert again.status_code == 409
    assert again.json()["message"] == "User with this email already exists"

    replay = await client.post(
        "/api/auth/register", json={**MEMBER, "otp": code, "step": "complete_registration"}
    )
    assert replay.status_code == 409


async def test_wrong_code_creates_nothing(client, outbox, session_factory):
    code = await _request_code(client, outbox)

    resp = await client.post(
        "/api/auth/register",
        json={**MEMBER, "otp": wrong_code(code), "step": "complete_registration"},
    )

    assert resp.status_code == 400
    assert resp.json()["reason"] == "INVALID"
    assert resp.json()["remainingAttempts"] == 2
    assert await _user_count(session_factory, MEMBER["email"]) == 0

    # the original code still works after one miss
    ok = await client.post(
        "/api/auth/register", json={**MEMBER, "otp": code, "step": "complete_registration"}
    )
    assert ok.status_code == 201


async def test_code_for_another_purpose_is_not_accepted(client, outbox, session_factory):
    await client.post("/api/auth/send-otp", json={"email": MEMBER["email"], "purpose": "login"})
    code = outbox.last_code(MEMBER["email"])

    resp = await client.post(
        "/api/auth/register", json={**MEMBER, "otp": code, "step": "complete_registration"}
    )

    assert resp.status_code == 400
    assert resp.json()["reason"] == "NOT_FOUND"
    assert await _user_count(session_factory, MEMBER["email"]) == 0


async def test_complete_requires_code(client):
    resp = await client.post("/api/auth/register", json={**MEMBER, "step": "complete_registration"})

    assert resp.status_code == 400
    assert resp.json()["message"] == "All fields including verification code are required"


async def test_token_opens_me(client, outbox):
    code = await _request_code(client, outbox)
    created = await client.post(
        "/api/v1/auth/register", json={**MEMBER, "otp": code, "step": "complete_registration"}
    )
    token = created.json()["token"]

    me = await client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["user"]["email"] == MEMBER["email"]

    anonymous = await client.get("/api/v1/auth/me")
    assert anonymous.status_code == 401
    assert anonymous.json()["success"] is False


async def test_concurrent_completions_create_one_account(file_session_factory, outbox):
    async with file_session_factory() as session:
        await OtpService(session, sender=outbox).issue(MEMBER["email"], OtpPurpose.REGISTRATION)
    code = outbox.last_code(MEMBER["email"])

    async def complete():
        async with file_session_factory() as session:
            orchestrator = RegistrationOrchestrator(session, OtpService(session, sender=outbox))
            try:
                outcome = await orchestrator.complete_registration(RegistrationInput(otp=code, **MEMBER))
                return outcome.state
            except RegistrationError as exc:
                return exc.kind

    results = await asyncio.gather(complete(), complete())

    assert results.count(RegistrationState.COMPLETE) == 1
    assert results.count("conflict") == 1
    assert await _user_count(file_session_factory, MEMBER["email"]) == 1
    assert await fetch_otps(file_session_factory, MEMBER["email"]) == []
