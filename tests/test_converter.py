"""
End-to-end tests for ConversionJob against a small fixture HD installation.
"""

import shutil

import pytest

from conversion_errors import (
    ArchiveFormatError,
    ConfigurationError,
    ExternalProcessHandoffError,
    SchemaVersionError,
)
from conversion_settings import ConversionSettings
from converter import ConversionJob, JobState, convert
from drs_archive import extract
from game_data import DATA_FILENAME, read_game_data, strings_path
from tests.conftest import (
    ARABIA_RMS,
    GRASS_SLP,
    ISLANDS_RMS,
    RecordingListener,
    make_dat,
    read_tree,
)


# ── helpers ──────────────────────────────────────────────────────────────────

def make_standalone(hd, out, **fields):
    return ConversionSettings.create(hd_dir=hd, output_dir=out, use_exe=True, **fields)


def run_job(settings, **kwargs):
    listener = RecordingListener()
    job = ConversionJob(settings, listener, **kwargs)
    state = job.run()
    return job, state, listener


def standalone_root(dirs, mod_name="WololoKingdoms"):
    out, _, _ = dirs
    return out / "Games" / mod_name


def voobly_root(dirs, mod_name="WololoKingdoms"):
    _, voobly, _ = dirs
    return voobly / "Voobly Mods" / "AOC" / "Data Mods" / mod_name


# ── successful runs ──────────────────────────────────────────────────────────

def test_standalone_conversion_with_no_snow_and_maps(make_settings, dirs):
    settings = make_settings(use_no_snow=True, copy_maps=True)
    job, state, listener = run_job(settings)

    assert state is JobState.FINISHED
    assert job.error is None
    root = standalone_root(dirs)

    terrain = extract(root / "Data" / "terrain.drs")
    assert terrain.get("15024.slp") == GRASS_SLP
    graphics = extract(root / "Data" / "graphics.drs")
    assert graphics.get("5.wav") == b"RIFF wave"

    data = read_game_data(root / "Data" / DATA_FILENAME)
    assert data.terrain(32).slp_id == 15000
    assert all(u.snow_graphic == -1 for u in data.units)

    assert (root / "Script.RM" / "Arabia.rms").read_bytes() == ARABIA_RMS
    language = (root / "language.ini").read_text(encoding="utf-8")
    assert "10271=Britons\n" in language

    assert listener.events[-1] == ("finished",)
    assert not listener.of("error")


def test_progress_is_monotonic_and_ends_at_100(make_settings):
    _, _, listener = run_job(make_settings(copy_maps=True))

    progress = listener.progress
    assert progress[0] == 0
    assert progress == sorted(progress)
    assert progress.count(100) == 1
    assert progress[-1] == 100
    assert listener.events[-2:] == [("progress", 100), ("finished",)]


def test_status_follows_pipeline_order(make_settings):
    _, _, listener = run_job(make_settings())
    statuses = [e[1] for e in listener.of("status")]
    assert statuses == [
        "Checking settings",
        "Extracting resource archives",
        "Patching game data",
        "Copying maps",
        "Repacking archives",
        "Installing converted files",
    ]


def test_both_destinations_receive_identical_data(make_settings, dirs):
    _, voobly, _ = dirs
    settings = make_settings(use_both=True, voobly_dir=voobly, copy_custom_maps=True)
    _, state, listener = run_job(settings)

    assert state is JobState.FINISHED
    assert read_tree(standalone_root(dirs)) == read_tree(voobly_root(dirs))
    assert (voobly_root(dirs) / "Script.RM" / "Islands.rms").read_bytes() == ISLANDS_RMS
    titled = listener.of("dialog_titled")
    assert len(titled) == 1 and titled[0][1] == "Voobly"


def test_user_patch_request_precedes_finished(make_settings, dirs):
    _, _, up = dirs
    job, state, listener = run_job(make_settings(up_dir=up, use_no_snow=True, mod_name="WK"))

    assert state is JobState.FINISHED
    kinds = listener.kinds()
    assert kinds.index("install") < kinds.index("finished")
    _, executable, flags = listener.of("install")[0]
    assert executable == str(up / "SetupAoC.exe")
    assert flags[0] == "-i"
    assert flags[-1] == "-g:WK"
    assert job.install_request.flags == tuple(flags)


def test_runs_are_reproducible(hd_install, tmp_path):
    trees = []
    for name in ("first", "second"):
        out = tmp_path / name
        out.mkdir()
        settings = make_standalone(hd_install, out, use_grid=True, copy_maps=True, copy_custom_maps=True)
        _, state, _ = run_job(settings, max_workers=1 if name == "first" else 4)
        assert state is JobState.FINISHED
        trees.append(read_tree(out))
    assert trees[0] == trees[1]


def test_existing_maps_are_kept_and_conflicts_reported(make_settings, dirs):
    map_dir = standalone_root(dirs) / "Script.RM"
    map_dir.mkdir(parents=True)
    (map_dir / "Arabia.rms").write_bytes(b"my own arabia")
    (map_dir / "Personal.rms").write_bytes(b"personal")

    _, state, listener = run_job(make_settings(copy_maps=True))

    assert state is JobState.FINISHED
    assert (map_dir / "Arabia.rms").read_bytes() == b"my own arabia"
    assert (map_dir / "Arabia (2).rms").read_bytes() == ARABIA_RMS
    assert (map_dir / "Personal.rms").read_bytes() == b"personal"
    (dialog,) = listener.of("dialog_replace")
    assert "<replace>" in dialog[2]
    assert dialog[3] == "Arabia (2).rms"


def test_existing_maps_survive_when_copying_is_off(make_settings, dirs):
    map_dir = standalone_root(dirs) / "Script.RM"
    map_dir.mkdir(parents=True)
    (map_dir / "Personal.rms").write_bytes(b"personal")

    _, state, _ = run_job(make_settings())

    assert state is JobState.FINISHED
    assert (map_dir / "Personal.rms").read_bytes() == b"personal"


def test_saved_games_and_scenarios_survive_reconversion(make_settings, dirs):
    root = standalone_root(dirs)
    (root / "SaveGame").mkdir(parents=True)
    (root / "SaveGame" / "my_game.mgz").write_bytes(b"recorded game")
    (root / "Scenario").mkdir()
    (root / "Scenario" / "campaign.scx").write_bytes(b"scenario")

    _, state, _ = run_job(make_settings())

    assert state is JobState.FINISHED
    assert (root / "SaveGame" / "my_game.mgz").read_bytes() == b"recorded game"
    assert (root / "Scenario" / "campaign.scx").read_bytes() == b"scenario"
    assert (root / "Data" / DATA_FILENAME).is_file()


def test_restricted_civ_mods_raise_dialog(make_settings, dirs):
    settings = make_settings(
        restricted_civ_mods=True,
        civ_overrides={"BRITONS": {"display_name": "Saxons", "short_name": "Saxons", "bonus_slot": "FRANKS"}},
    )
    _, state, listener = run_job(settings)

    assert state is JobState.FINISHED
    assert len(listener.of("dialog")) == 1
    data = read_game_data(standalone_root(dirs) / "Data" / DATA_FILENAME)
    assert data.civ(1).bonus_tech == 101
    assert data.civ(1).name == "Saxons"


def test_missing_language_falls_back_to_english(make_settings, dirs):
    _, state, listener = run_job(make_settings(language="de"))

    assert state is JobState.FINISHED
    assert any(line.startswith("WARNING:") and "'de'" in line for line in listener.logs)
    assert "10271=Britons" in (standalone_root(dirs) / "language.ini").read_text(encoding="utf-8")


def test_convert_helper_releases_job(make_settings):
    assert convert(make_settings()) is JobState.FINISHED


# ── failures ─────────────────────────────────────────────────────────────────

def test_removed_source_fails_validation(make_settings, hd_install, dirs):
    settings = make_settings()
    shutil.rmtree(hd_install)

    job, state, listener = run_job(settings)

    assert state is JobState.FAILED
    assert isinstance(job.error, ConfigurationError)
    assert len(listener.of("error")) == 1
    assert "finished" not in listener.kinds()
    out, _, _ = dirs
    assert list(out.iterdir()) == []


def test_missing_data_file_fails_validation(make_settings, hd_install):
    (hd_install / "Data" / DATA_FILENAME).unlink()
    job, state, _ = run_job(make_settings())
    assert state is JobState.FAILED
    assert isinstance(job.error, ConfigurationError)


def test_corrupt_archive_fails_without_touching_destination(make_settings, hd_install, dirs):
    root = standalone_root(dirs)
    root.mkdir(parents=True)
    (root / "previous.txt").write_text("old install")
    (hd_install / "Data" / "graphics.drs").write_bytes(b"Copyright (c) garbage")

    job, state, listener = run_job(make_settings())

    assert state is JobState.FAILED
    assert isinstance(job.error, ArchiveFormatError)
    (error,) = listener.of("error")
    assert "graphics.drs" in error[1]
    assert read_tree(root) == {"previous.txt": b"old install"}
    assert job.staging_dir is None
    assert 100 not in listener.progress


def test_undecodable_string_table_is_a_format_error(make_settings, hd_install, dirs):
    path = strings_path(hd_install, "en")
    path.write_bytes(b'1 "\xff\xfe bad"\n')

    job, state, listener = run_job(make_settings())

    assert state is JobState.FAILED
    assert isinstance(job.error, ArchiveFormatError)
    (error,) = listener.of("error")
    assert "key-value-strings-utf8.txt" in error[1]
    assert not standalone_root(dirs).exists()


def test_unknown_data_version_fails(make_settings, hd_install):
    (hd_install / "Data" / DATA_FILENAME).write_bytes(make_dat(version="VER 4.0"))
    job, state, _ = run_job(make_settings())
    assert state is JobState.FAILED
    assert isinstance(job.error, SchemaVersionError)


def test_missing_installer_fails_after_deploying(make_settings, dirs):
    _, _, up = dirs
    (up / "SetupAoC.exe").unlink()

    job, state, listener = run_job(make_settings(up_dir=up))

    assert state is JobState.FAILED
    assert isinstance(job.error, ExternalProcessHandoffError)
    assert (standalone_root(dirs) / "Data" / DATA_FILENAME).is_file()
    assert not listener.of("install")
    assert len(listener.of("error")) == 1


def test_unexpected_error_is_reported_once(make_settings, monkeypatch):
    import converter

    def boom(ctx):
        raise KeyError("unexpected")

    monkeypatch.setattr(converter, "apply_patches", boom)
    job, state, listener = run_job(make_settings())

    assert state is JobState.FAILED
    assert "unexpected" in str(job.error)
    assert len(listener.of("error")) == 1


def test_job_runs_only_once(make_settings):
    job, _, _ = run_job(make_settings())
    with pytest.raises(RuntimeError):
        job.run()
    job.close()
    job.close()
