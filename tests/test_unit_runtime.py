from micwarden.unit_runtime import main, prepare_runtime, render_service_unit


def test_prepare_runtime_writes_env_and_dirs(tmp_path, monkeypatch):
    cfg_path = tmp_path / "config.yaml"
    run_dir = tmp_path / "run"
    pid_dir = tmp_path / "run" / "streams"
    beat_dir = tmp_path / "run" / "beats"
    log_dir = tmp_path / "log"
    state_dir = tmp_path / "state"

    cfg_path.write_text(
        f"""
media_server:
  host: media.local
paths:
  run_dir: "{run_dir}"
  lock_file: "{run_dir}/micwarden.lock"
  pid_dir: "{pid_dir}"
  heartbeat_dir: "{beat_dir}"
  log_dir: "{log_dir}"
  state_dir: "{state_dir}"
""",
        encoding="utf-8",
    )
    monkeypatch.setenv("MICWARDEN_CONFIG", str(cfg_path))

    env_file = tmp_path / "etc" / "runtime.env"
    values = prepare_runtime(env_file, ensure_dirs=True)

    text = env_file.read_text(encoding="utf-8")
    assert text.strip().count("\n") >= 4
    assert 'MEDIAMTX_HOST="media.local"' in text
    assert values["MICWARDEN_PID_DIR"] == str(pid_dir)
    assert values["MICWARDEN_LOCK_FILE"] == f"{run_dir}/micwarden.lock"
    assert "DEV" not in values
    for path in (run_dir, pid_dir, beat_dir, log_dir, state_dir):
        assert path.is_dir()


def test_dev_mode_is_exported(tmp_path, monkeypatch):
    monkeypatch.setenv("DEV", "1")

    values = prepare_runtime(tmp_path / "runtime.env")

    assert values["DEV"] == "1"


def test_service_unit_allows_for_full_stop_sequence(tmp_path):
    unit = render_service_unit(tmp_path / "runtime.env", python="/usr/bin/python3", user="audio")

    assert f"EnvironmentFile=-{tmp_path / 'runtime.env'}" in unit
    assert "ExecStart=/usr/bin/python3 -m micwarden.service run" in unit
    assert "ExecReload=/bin/kill -HUP $MAINPID" in unit
    assert "TimeoutStopSec=25" in unit
    assert "User=audio" in unit


def test_main_writes_unit_file(tmp_path):
    env_file = tmp_path / "runtime.env"
    unit_path = tmp_path / "systemd" / "micwarden.service"

    assert main(["--env-file", str(env_file), "--write-unit", str(unit_path)]) == 0

    assert env_file.exists()
    assert "[Service]" in unit_path.read_text(encoding="utf-8")
    assert "User=" not in unit_path.read_text(encoding="utf-8")
