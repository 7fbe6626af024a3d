import base64
import json
from itertools import chain

import pytest

from gamemode import services, storage
from gamemode.errors import DataMismatch, InvalidToken, NotFound, StorageError, Unauthorized
from gamemode.tokens import (
    CODE_ALPHABET,
    CODE_LENGTH,
    CollectionTokenService,
    decode_token,
    encode_token,
    looks_like_code,
    normalize_code,
)

CAMPAIGN_ID = "campaign-chinatown"


class CodeStore:
    """Only knows which verification codes are already taken."""

    def __init__(self, taken=()):
        self.taken = set(taken)
        self.checked = []

    def verification_code_exists(self, code):
        self.checked.append(code)
        return code in self.taken


def _chars(*codes):
    """A ``choice`` stand-in that spells out the given codes, one char per call."""
    stream = iter(chain.from_iterable(codes))
    return lambda alphabet: next(stream)


def _start(user_id="user-player"):
    started = services.start_campaign(user_id, CAMPAIGN_ID)
    return storage.get_record(started["progress"]["id"])


def test_token_round_trip_strips_padding():
    payload = {"progress_id": "p1", "user_id": "u1", "campaign_id": "c1", "timestamp": 1}
    token = encode_token(payload)
    assert "=" not in token
    assert decode_token(token) == payload


@pytest.mark.parametrize(
    "token",
    [
        "",
        "not base64 at all!!",
        base64.urlsafe_b64encode(b"[1, 2, 3]").decode(),
        base64.urlsafe_b64encode(json.dumps({"progress_id": "p1"}).encode()).decode(),
    ],
)
def test_decode_rejects_malformed_tokens(token):
    with pytest.raises(InvalidToken):
        decode_token(token)


def test_code_helpers():
    assert normalize_code("  ab2cd3 ") == "AB2CD3"
    assert looks_like_code("ab2cd3")
    assert not looks_like_code("AB2CD0")
    assert not looks_like_code("ABCDEFG")


def test_generated_codes_use_unambiguous_alphabet(ctx):
    service = CollectionTokenService(store=CodeStore())
    for _ in range(50):
        code = service.issue_verification_code()
        assert len(code) == CODE_LENGTH
        assert set(code) <= set(CODE_ALPHABET)
        assert not set(code) & set("01IO")


def test_code_collision_draws_again(ctx):
    store = CodeStore(taken={"AAAAAA"})
    service = CollectionTokenService(store=store, choice=_chars("AAAAAA", "BBBBBB"))
    assert service.issue_verification_code() == "BBBBBB"
    assert store.checked == ["AAAAAA", "BBBBBB"]


def test_code_allocation_gives_up_after_max_attempts(ctx):
    service = CollectionTokenService(
        store=CodeStore(taken={"AAAAAA"}),
        max_code_attempts=3,
        choice=lambda alphabet: "A",
    )
    with pytest.raises(StorageError) as excinfo:
        service.issue_verification_code()
    assert excinfo.value.payload["error"] == "verification_code_exhausted"


def test_start_campaign_skips_codes_already_in_use(ctx, monkeypatch):
    first = _start("user-player")
    taken = first.verification_code
    real_service = services.token_service

    def service_with_forced_collision():
        service = real_service()
        service.choice = _chars(taken, "ZZZZZZ")
        return service

    monkeypatch.setattr(services, "token_service", service_with_forced_collision)
    second = _start("user-other")
    assert second.verification_code == "ZZZZZZ"


def test_issue_token_points_at_scanner(ctx):
    record = _start()
    service = CollectionTokenService(base_url="https://trails.example/", clock=lambda: 1700000000.5)
    issued = service.issue_token(record)

    assert issued.url.startswith("https://trails.example/admin/qr-scanner?token=")
    assert issued.qr_code.startswith("data:image/png;base64,")
    assert issued.verification_code == record.verification_code
    data = decode_token(issued.token)
    assert data["progress_id"] == record.id
    assert data["user_id"] == "user-player"
    assert data["campaign_id"] == CAMPAIGN_ID
    assert data["timestamp"] == 1700000000500


def test_verify_by_code_is_case_insensitive(ctx):
    record = _start()
    result = CollectionTokenService().verify(f" {record.verification_code.lower()} ", "user-admin")
    assert result["progress"]["id"] == record.id
    assert result["user"]["username"] == "player"
    assert result["campaign"]["name"] == "Chinatown Heritage Hunt"


def test_verify_by_token(ctx):
    record = _start()
    service = CollectionTokenService()
    result = service.verify(service.issue_token(record).token, "user-admin")
    assert result["progress"]["verification_code"] == record.verification_code


def test_verify_does_not_collect(ctx):
    record = _start()
    CollectionTokenService().verify(record.verification_code, "user-admin")
    assert storage.get_record(record.id).points_collected is False


def test_verify_requires_admin(ctx):
    record = _start()
    with pytest.raises(Unauthorized):
        CollectionTokenService().verify(record.verification_code, "user-player")


def test_verify_unknown_code(ctx):
    with pytest.raises(NotFound) as excinfo:
        CollectionTokenService().verify("ZZZZZZ", "user-admin")
    assert excinfo.value.payload["error"] == "code_not_found"


def test_verify_rejects_token_for_someone_else(ctx):
    record = _start()
    forged = encode_token({"progress_id": record.id, "user_id": "user-other", "campaign_id": CAMPAIGN_ID})
    with pytest.raises(DataMismatch):
        CollectionTokenService().verify(forged, "user-admin")


def test_verify_token_for_missing_progress(ctx):
    token = encode_token({"progress_id": "gone", "user_id": "user-player", "campaign_id": CAMPAIGN_ID})
    with pytest.raises(NotFound):
        CollectionTokenService().verify(token, "user-admin")


def test_verify_garbage_token(ctx):
    with pytest.raises(InvalidToken):
        CollectionTokenService().verify("definitely-not-a-token", "user-admin")


@pytest.mark.parametrize("typed", ["ABC10O", "ABCDE", "ABCDEFG"])
def test_typed_code_that_is_malformed_is_not_found(ctx, typed):
    with pytest.raises(NotFound) as excinfo:
        CollectionTokenService().verify(typed, "user-admin", is_code=True)
    assert excinfo.value.payload["error"] == "code_not_found"


@pytest.mark.parametrize("typed", ["abc10o", "ABCDE"])
def test_verification_code_field_never_falls_back_to_token(ctx, typed):
    with pytest.raises(NotFound):
        services.verify("user-admin", verification_code=typed)


def test_token_field_is_always_decoded(ctx):
    record = _start()
    with pytest.raises(InvalidToken):
        services.verify("user-admin", token=record.verification_code)
