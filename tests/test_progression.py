import pytest
from sqlalchemy import update

from extensions import db
from gamemode import services, storage
from gamemode.errors import AlreadyCollected, InvalidState, InvalidTransition, NotFound, Unauthorized
from gamemode.graph import ProgressionGraph
from gamemode.progression import STATE_COMPLETED, STATE_IN_PROGRESS, ProgressionStateMachine
from models import ProgressionRecord

CAMPAIGN_ID = "campaign-chinatown"
ROUTE_A = "route-telok-ayer"
ROUTE_B = "route-ann-siang"
M1, M2, M3, M4 = (
    "marker-thian-hock-keng",
    "marker-lau-pa-sat",
    "marker-ann-siang-park",
    "marker-sri-mariamman",
)


def _machine(user_id="user-player", **kwargs):
    started = services.start_campaign(user_id, CAMPAIGN_ID)
    record = storage.get_record(started["progress"]["id"])
    return ProgressionStateMachine(storage.load_graph(CAMPAIGN_ID), record, **kwargs)


def _finish(machine):
    for marker_id in (M1, M2, M3, M4):
        machine.complete_marker(marker_id)


class FlakyStore:
    """Delegates to storage but fails the first ``failures`` saves."""

    ConcurrentUpdate = storage.ConcurrentUpdate

    def __init__(self, failures):
        self.failures = failures
        self.saves = 0

    def __getattr__(self, name):
        return getattr(storage, name)

    def save_record(self, record):
        self.saves += 1
        if self.saves <= self.failures:
            raise storage.ConcurrentUpdate("simulated")
        return storage.save_record(record)


def test_new_record_starts_at_first_route(ctx):
    machine = _machine()
    record = machine.record
    assert machine.state == STATE_IN_PROGRESS
    assert record.current_route_id == ROUTE_A
    assert record.current_marker_index == 0
    assert record.completed_marker_ids == []
    assert record.total_score == 0
    assert len(record.verification_code) == 6


def test_wrong_answer_forfeits_points_without_blocking_progress(ctx):
    machine = _machine()
    assert machine.record_attempt("q-thk-year", "1842").points_earned == 10
    assert machine.record_attempt("q-thk-nails", "false").points_earned == 0
    assert machine.record_attempt("q-thk-goddess", " mazu ").points_earned == 10

    result = machine.complete_marker(M1)

    assert machine.record.total_score == 20
    assert M1 in machine.record.completed_marker_ids
    assert not result.already_completed
    assert storage.has_correct_attempt(machine.record.id, "q-thk-year")
    assert len(storage.list_attempts(machine.record.id)) == 3


def test_attempts_do_not_move_the_cursor(ctx):
    machine = _machine()
    machine.record_attempt("q-thk-year", "1842")
    assert machine.record.completed_marker_ids == []
    assert machine.record.current_marker_index == 0


def test_attempt_on_locked_marker_rejected(ctx):
    machine = _machine()
    with pytest.raises(InvalidTransition) as excinfo:
        machine.record_attempt("q-lps-meaning", "market")
    assert excinfo.value.payload["error"] == "marker_locked"
    assert machine.record.total_score == 0


def test_attempt_on_unknown_question(ctx):
    machine = _machine()
    with pytest.raises(NotFound):
        machine.record_attempt("q-missing", "x")


def test_repeat_correct_answers_score_again_by_default(ctx):
    machine = _machine()
    machine.record_attempt("q-thk-year", "1842")
    machine.record_attempt("q-thk-year", "1842")
    assert machine.record.total_score == 20


def test_repeat_correct_answers_can_be_capped(ctx):
    machine = _machine(score_repeat_attempts=False)
    machine.record_attempt("q-thk-year", "1842")
    repeat = machine.record_attempt("q-thk-year", "1842")
    assert repeat.is_correct
    assert repeat.points_earned == 0
    assert machine.record.total_score == 10


def test_out_of_sequence_completion_rejected(ctx):
    machine = _machine()
    with pytest.raises(InvalidTransition) as excinfo:
        machine.complete_marker(M2)
    assert excinfo.value.payload["error"] == "marker_out_of_sequence"
    assert storage.get_record(machine.record.id).completed_marker_ids == []


def test_unknown_marker_completion(ctx):
    machine = _machine()
    with pytest.raises(NotFound):
        machine.complete_marker("marker-elsewhere")


def test_completion_is_idempotent(ctx):
    machine = _machine()
    machine.complete_marker(M1)
    version = machine.record.version
    again = machine.complete_marker(M1)
    assert again.already_completed
    assert machine.record.completed_marker_ids == [M1]
    assert machine.record.version == version


def test_cursor_tracks_position_in_route(ctx):
    machine = _machine()
    machine.complete_marker(M1)
    assert machine.record.current_route_id == ROUTE_A
    assert machine.record.current_marker_index == 1


def test_finishing_a_route_moves_to_the_next(ctx):
    machine = _machine()
    machine.complete_marker(M1)
    result = machine.complete_marker(M2)
    record = storage.get_record(machine.record.id)
    assert result.route_completed
    assert record.completed_route_ids == [ROUTE_A]
    assert record.current_route_id == ROUTE_B
    assert record.current_marker_index == 0
    assert not record.is_completed


def test_completing_every_marker_completes_campaign(ctx):
    machine = _machine()
    machine.complete_marker(M1)
    machine.complete_marker(M2)
    machine.complete_marker(M3)
    result = machine.complete_marker(M4)

    record = storage.get_record(machine.record.id)
    assert result.campaign_completed
    assert machine.state == STATE_COMPLETED
    assert record.is_completed
    assert record.completed_at is not None
    assert record.completed_route_ids == [ROUTE_A, ROUTE_B]
    assert record.current_route_id is None


def test_completed_at_is_set_once(ctx):
    machine = _machine()
    _finish(machine)
    completed_at = storage.get_record(machine.record.id).completed_at
    again = machine.complete_marker(M4)
    assert again.already_completed
    assert storage.get_record(machine.record.id).completed_at == completed_at


def test_completion_retries_after_concurrent_update(ctx):
    machine = _machine()
    # Another writer bumps the version behind this session's back.
    with db.engine.begin() as connection:
        connection.execute(
            update(ProgressionRecord)
            .where(ProgressionRecord.id == machine.record.id)
            .values(version=ProgressionRecord.version + 1)
        )

    result = machine.complete_marker(M1)

    assert not result.already_completed
    assert storage.get_record(machine.record.id).completed_marker_ids == [M1]


def test_completion_gives_up_after_retry_limit(ctx):
    store = FlakyStore(failures=10)
    machine = _machine(store=store, max_retries=2)
    with pytest.raises(storage.ConcurrentUpdate):
        machine.complete_marker(M1)
    assert store.saves == 3


def test_completion_succeeds_within_retry_limit(ctx):
    store = FlakyStore(failures=1)
    machine = _machine(store=store, max_retries=2)
    result = machine.complete_marker(M1)
    assert not result.already_completed
    assert store.saves == 2
    assert storage.get_record(machine.record.id).completed_marker_ids == [M1]


def test_record_from_another_campaign_rejected(ctx):
    machine = _machine()
    with pytest.raises(InvalidState):
        ProgressionStateMachine(ProgressionGraph("other-campaign", []), machine.record)


def test_points_cannot_be_collected_before_completion(ctx):
    machine = _machine()
    with pytest.raises(InvalidState) as excinfo:
        machine.mark_points_collected("user-admin")
    assert excinfo.value.payload["error"] == "campaign_not_completed"


def test_only_admins_collect_points(ctx):
    machine = _machine()
    _finish(machine)
    with pytest.raises(Unauthorized):
        machine.mark_points_collected("user-other")
    with pytest.raises(Unauthorized):
        machine.mark_points_collected("nobody")
    assert not storage.get_record(machine.record.id).points_collected


def test_points_collected_exactly_once(ctx):
    machine = _machine()
    _finish(machine)

    record = machine.mark_points_collected("user-admin")
    assert record.points_collected
    assert record.collected_by == "user-admin"
    assert record.collected_at is not None

    with pytest.raises(AlreadyCollected):
        machine.mark_points_collected("user-admin")


def test_collection_race_reports_already_collected(ctx):
    machine = _machine()
    _finish(machine)
    assert machine.record.points_collected is False
    # A second admin device collects while this session still holds the old row.
    with db.engine.begin() as connection:
        connection.execute(
            update(ProgressionRecord)
            .where(ProgressionRecord.id == machine.record.id)
            .values(points_collected=True, collected_by="user-admin")
        )

    with pytest.raises(AlreadyCollected) as excinfo:
        machine.mark_points_collected("user-admin")
    assert excinfo.value.payload["collected_by"] == "user-admin"


def test_superseded_record_is_frozen(ctx):
    machine = _machine()
    _finish(machine)
    services.start_campaign("user-player", CAMPAIGN_ID, play_again=True)

    assert machine.record.superseded_at is not None
    with pytest.raises(InvalidState) as excinfo:
        machine.record_attempt("q-thk-year", "1842")
    assert excinfo.value.payload["error"] == "progress_superseded"
    with pytest.raises(InvalidState):
        machine.complete_marker(M4)
    assert storage.get_record(machine.record.id).total_score == 0


def test_redeemed_record_is_frozen(ctx):
    machine = _machine()
    _finish(machine)
    machine.mark_points_collected("user-admin")

    with pytest.raises(InvalidState) as excinfo:
        machine.record_attempt("q-thk-year", "1842")
    assert excinfo.value.payload["error"] == "progress_redeemed"
    assert storage.get_record(machine.record.id).total_score == 0
    assert storage.list_attempts(machine.record.id) == []


def test_answer_racing_a_collection_is_not_scored(ctx):
    machine = _machine()
    _finish(machine)
    assert machine.record.points_collected is False
    with db.engine.begin() as connection:
        connection.execute(
            update(ProgressionRecord)
            .where(ProgressionRecord.id == machine.record.id)
            .values(points_collected=True, collected_by="user-admin")
        )

    with pytest.raises(InvalidState) as excinfo:
        machine.record_attempt("q-thk-year", "1842")
    assert excinfo.value.payload["error"] == "progress_closed"
    assert storage.get_record(machine.record.id).total_score == 0
    assert storage.list_attempts(machine.record.id) == []


def test_collecting_looks_up_the_admin_once(ctx, monkeypatch):
    machine = _machine()
    _finish(machine)
    lookups = []
    real_get_user = storage.get_user

    def counting_get_user(user_id):
        lookups.append(user_id)
        return real_get_user(user_id)

    monkeypatch.setattr(storage, "get_user", counting_get_user)
    services.mark_points_collected(machine.record.id, "user-admin")
    assert lookups == ["user-admin"]


def test_non_admin_collection_rejected_by_service(ctx):
    machine = _machine()
    _finish(machine)
    with pytest.raises(Unauthorized):
        services.mark_points_collected(machine.record.id, "user-player")
