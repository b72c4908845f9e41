from engines.competency import (
    COMPETENCY_REGISTRY,
    apply_mastery_outcome,
    coverage_summary,
    mastered_ids,
    mastery_level,
    ready_for_number_range,
    unlocked_competencies,
)
from schemas import CompetencyMastery


def _run(outcomes):
    entry = None
    history = []
    for correct in outcomes:
        entry = apply_mastery_outcome(entry, correct)
        history.append((entry.score, entry.mastered))
    return entry, history


def test_registry_covers_every_task_shape():
    assert len(COMPETENCY_REGISTRY) == 24
    definition = COMPETENCY_REGISTRY["add_zr100_carry_start"]
    assert "add_zr100_nocarry_start" in definition.prerequisites
    assert "add_zr100_carry_middle" in definition.prerequisites
    assert "add_zr20_carry_start" in definition.prerequisites


def test_mastery_needs_three_points_and_errors_cost_two():
    entry, history = _run([True, False, True, True, True])
    assert [score for score, _ in history] == [1, 0, 1, 2, 3]
    assert [mastered for _, mastered in history] == [False, False, False, False, True]
    assert entry.attempts == 5


def test_score_never_negative():
    entry, _ = _run([False, False])
    assert entry.score == 0
    assert not entry.mastered


def test_mastery_can_be_lost():
    entry, _ = _run([True, True, True, False])
    assert entry.score == 1
    assert not entry.mastered


def test_levels_and_unlocks(fresh_record):
    record = fresh_record.model_copy(
        update={
            "competency_mastery": {
                "add_zr20_nocarry_end": CompetencyMastery(score=3, attempts=3),
                "add_zr20_carry_end": CompetencyMastery(score=1, attempts=1),
            }
        }
    )
    assert mastery_level(record, "add_zr20_nocarry_end") == 1.0
    assert abs(mastery_level(record, "add_zr20_carry_end") - 1 / 3) < 1e-9
    assert mastery_level(record, "sub_zr20_carry_end") == 0.0
    assert mastered_ids(record.competency_mastery) == ["add_zr20_nocarry_end"]

    unlocked = unlocked_competencies(record, 20)
    assert "add_zr20_carry_end" in unlocked
    assert "add_zr20_nocarry_middle" in unlocked
    assert "add_zr20_carry_middle" not in unlocked
    assert "add_zr20_nocarry_end" not in unlocked


def test_number_range_readiness(fresh_record):
    assert not ready_for_number_range(fresh_record, 100)
    ids = [cid for cid, d in COMPETENCY_REGISTRY.items() if d.number_range == 20]
    mastery = {cid: CompetencyMastery(score=3, attempts=3) for cid in ids[: len(ids) // 2]}
    record = fresh_record.model_copy(update={"competency_mastery": mastery})
    assert ready_for_number_range(record, 100)
    assert coverage_summary(record)["20"] == (len(ids) // 2, len(ids))
