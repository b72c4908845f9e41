import json
import random

from engines.simulation import LearningSimulation, Persona
from scripts import run_simulation


def test_simulation_runs_every_persona_without_repeats(small_settings):
    simulation = LearningSimulation(settings=small_settings, random_seed=4)
    episodes = simulation.run(steps=6)

    assert len(episodes) == 6 * len(simulation.personas)
    assert not any(episode.repeated for episode in episodes)
    metrics = simulation.summarise(episodes)
    assert [m.persona for m in metrics] == [p.name for p in simulation.personas]
    for item in metrics:
        assert item.episodes == 6
        assert 0.0 <= item.accuracy <= 1.0
        assert 0.0 <= item.mean_predicted_success <= 1.0
        assert item.immediate_repeats == 0
        assert sum(item.competency_distribution.values()) == 6
        # Every simulated wrong answer carries a classified error.
        assert sum(item.error_distribution.values()) == round(item.episodes * (1 - item.accuracy))
        assert item.final_number_range in (20, 100)


def test_same_seed_reproduces_the_run(small_settings):
    first = LearningSimulation(settings=small_settings, random_seed=21).run(steps=4)
    second = LearningSimulation(settings=small_settings, random_seed=21).run(steps=4)
    assert [(e.task, e.success) for e in first] == [(e.task, e.success) for e in second]


def test_custom_attempt_model_drives_outcomes(small_settings):
    def always_right(rng: random.Random, persona, generated):
        return True, 5.0, False

    simulation = LearningSimulation(
        settings=small_settings,
        personas=[Persona(name="Perfect", accuracy_bias=1.0, latency_bias=1.0, help_bias=0.0)],
        random_seed=1,
        attempt_model=always_right,
    )
    metrics = simulation.summarise(simulation.run(steps=8))
    assert metrics[0].accuracy == 1.0
    assert metrics[0].mastered_competencies >= 0


def test_cli_writes_report(tmp_path, monkeypatch, capsys):
    monkeypatch.setenv("DB_PATH", str(tmp_path / "sim.db"))
    monkeypatch.delenv("ENGINE_SETTINGS_PATH", raising=False)
    settings_file = tmp_path / "settings.json"
    settings_file.write_text(
        json.dumps({"evolution": {"population_size": 8, "generations": 2}}),
        encoding="utf-8",
    )
    output = tmp_path / "report.json"

    exit_code = run_simulation.main(
        ["--steps", "3", "--seed", "1", "--settings", str(settings_file), "--output", str(output)]
    )

    assert exit_code == 0
    report = json.loads(output.read_text(encoding="utf-8"))
    assert report["steps"] == 3
    assert len(report["personas"]) == 3
    assert "Novice" in capsys.readouterr().out


def test_cli_rejects_missing_settings_file(tmp_path, monkeypatch, capsys):
    monkeypatch.setenv("DB_PATH", str(tmp_path / "sim.db"))
    monkeypatch.delenv("ENGINE_SETTINGS_PATH", raising=False)
    assert run_simulation.main(["--settings", str(tmp_path / "missing.json")]) == 1
    assert "not found" in capsys.readouterr().err
