"""Verification codes, redemption tokens and their QR rendering.

Tokens are a URL-safe base64 JSON envelope, not a signature: an admin scan
decodes the token and only trusts it once the embedded user and campaign
match the live progression record.
"""

from __future__ import annotations

import base64
import binascii
import io
import json
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

import qrcode
from qrcode.image.pil import PilImage
from flask import current_app

from models import ProgressionRecord, User

from . import storage
from .errors import DataMismatch, InvalidToken, NotFound, StorageError, Unauthorized, ValidationError

# Uppercase letters and digits without 0/O/1/I.
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 6
TOKEN_FIELDS = ("progress_id", "user_id", "campaign_id")


@dataclass(frozen=True)
class IssuedToken:
    token: str
    verification_code: str
    url: str
    qr_code: str
    progress_id: str

    def to_dict(self) -> dict:
        return {
            "token": self.token,
            "verification_code": self.verification_code,
            "url": self.url,
            "qr_code": self.qr_code,
            "progress_id": self.progress_id,
        }


def normalize_code(value: str) -> str:
    return (value or "").strip().upper()


def looks_like_code(value: str) -> bool:
    code = normalize_code(value)
    return len(code) == CODE_LENGTH and all(char in CODE_ALPHABET for char in code)


def encode_token(payload: Dict[str, Any]) -> str:
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_token(token: str) -> Dict[str, Any]:
    """Reverse encode_token; raises InvalidToken on anything malformed."""
    cleaned = (token or "").strip()
    if not cleaned:
        raise InvalidToken("Token is empty", payload={"error": "invalid_token"})
    padded = cleaned + "=" * (-len(cleaned) % 4)
    try:
        decoded = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise InvalidToken("Token could not be decoded", payload={"error": "invalid_token"}) from exc
    if not isinstance(decoded, dict) or not all(
        isinstance(decoded.get(key), str) and decoded.get(key) for key in TOKEN_FIELDS
    ):
        raise InvalidToken("Token is missing required fields", payload={"error": "invalid_token"})
    return decoded


def render_qr_data_url(data: str, *, box_size: int = 10, border: int = 2) -> str:
    """Render ``data`` as a PNG QR code and return it as a data URL."""
    qr = qrcode.QRCode(box_size=box_size, border=border, image_factory=PilImage)
    qr.add_data(data)
    qr.make(fit=True)
    image = qr.make_image()
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"


class CollectionTokenService:
    def __init__(
        self,
        *,
        store=storage,
        base_url: str = "http://localhost:5001",
        max_code_attempts: int = 10,
        qr_box_size: int = 10,
        qr_border: int = 2,
        choice: Callable[[str], str] = secrets.choice,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.base_url = (base_url or "").rstrip("/")
        self.max_code_attempts = max(1, int(max_code_attempts))
        self.qr_box_size = qr_box_size
        self.qr_border = qr_border
        self.choice = choice
        self.clock = clock

    def issue_verification_code(self) -> str:
        for _ in range(self.max_code_attempts):
            code = "".join(self.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))
            if not self.store.verification_code_exists(code):
                return code
            current_app.logger.info("Verification code collision, drawing again")
        raise StorageError(
            "Could not allocate a unique verification code",
            payload={"error": "verification_code_exhausted"},
        )

    def issue_token(self, record: ProgressionRecord) -> IssuedToken:
        token = encode_token(
            {
                "progress_id": record.id,
                "user_id": record.user_id,
                "campaign_id": record.campaign_id,
                "timestamp": int(self.clock() * 1000),
            }
        )
        url = f"{self.base_url}/admin/qr-scanner?token={quote(token, safe='')}"
        return IssuedToken(
            token=token,
            verification_code=record.verification_code,
            url=url,
            qr_code=render_qr_data_url(url, box_size=self.qr_box_size, border=self.qr_border),
            progress_id=record.id,
        )

    def verify(self, token_or_code: str, admin_id: str, *, is_code: Optional[bool] = None) -> Dict[str, Any]:
        """Resolve a scanned token or typed code to a read-only summary for the admin.

        ``is_code`` says which kind of value the caller sent; only when it is
        None is the kind guessed from the value's shape. Does not mark
        anything collected.
        """
        admin = self.store.get_user(admin_id)
        if admin is None or admin.role != User.ROLE_ADMIN:
            current_app.logger.warning("Verification attempted by non-admin %s", admin_id)
            raise Unauthorized("Admin access required", payload={"error": "admin_required"})

        value = (token_or_code or "").strip()
        if not value:
            raise ValidationError("Token or verification code required", payload={"error": "missing_token"})

        if is_code is None:
            is_code = looks_like_code(value)
        if is_code:
            record = self.store.get_record_by_code(normalize_code(value))
            if record is None:
                raise NotFound("Invalid verification code", payload={"error": "code_not_found"})
        else:
            record = self._record_for_token(value)

        return self._projection(record)

    def _record_for_token(self, token: str) -> ProgressionRecord:
        data = decode_token(token)
        record = self.store.get_record(data["progress_id"])
        if record is None:
            raise NotFound("Campaign progress not found", payload={"error": "progress_not_found"})
        if record.user_id != data["user_id"] or record.campaign_id != data["campaign_id"]:
            current_app.logger.warning("Token for progress %s does not match the live record", record.id)
            raise DataMismatch("QR code data does not match this progress", payload={"error": "data_mismatch"})
        return record

    def _projection(self, record: ProgressionRecord) -> Dict[str, Any]:
        user: Optional[User] = self.store.get_user(record.user_id)
        campaign = self.store.get_campaign(record.campaign_id)
        summary = record.to_summary_dict()
        return {
            "user": {
                "id": record.user_id,
                "username": user.username if user else None,
                "email": user.email if user else None,
            },
            "campaign": {
                "id": record.campaign_id,
                "name": campaign.name if campaign else None,
            },
            "progress": {
                key: summary[key]
                for key in (
                    "id",
                    "total_score",
                    "is_completed",
                    "points_collected",
                    "collected_by",
                    "collected_at",
                    "started_at",
                    "completed_at",
                    "verification_code",
                )
            },
        }
