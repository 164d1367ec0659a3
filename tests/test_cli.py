import os
from pathlib import Path
import subprocess
import sys


REPO_ROOT = Path(__file__).resolve().parents[1]


def _base_env(tmp_path: Path) -> dict[str, str]:
    env = os.environ.copy()
    env["DATABASE_URL"] = f"sqlite:///{tmp_path / 'cli.db'}"
    env["UPLOAD_DIR"] = str(tmp_path / "uploads")
    env["SUBMISSION_DELAY_SECONDS"] = "0"
    env.pop("LOG_FILE", None)
    return env


def _run_cli(tmp_path: Path, *args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [sys.executable, "-m", "formbatch.main", *args],
        cwd=REPO_ROOT,
        env=_base_env(tmp_path),
        check=False,
        capture_output=True,
        text=True,
    )


def test_cli_prints_sample_csv(tmp_path: Path) -> None:
    proc = _run_cli(tmp_path, "sample-csv")

    assert proc.returncode == 0
    assert proc.stdout.splitlines()[0].startswith('"Title","First Name","Last Name"')


def test_cli_writes_sample_csv_to_file(tmp_path: Path) -> None:
    output = tmp_path / "sample.csv"

    proc = _run_cli(tmp_path, "sample-csv", "--output", str(output))

    assert proc.returncode == 0
    assert "John" in output.read_text(encoding="utf-8")


def test_cli_returns_nonzero_without_valid_records(tmp_path: Path) -> None:
    csv_path = tmp_path / "people.csv"
    csv_path.write_text(
        "Title,First Name,Last Name,Phone Number,Email,Marital Status,Group,Church Name\n"
        "Mr,J,Doe,08012345678,not-an-email,Single,CE LIMITLESS GROUP,CE Lagos\n",
        encoding="utf-8",
    )

    proc = _run_cli(tmp_path, "run", "--csv", str(csv_path))

    assert proc.returncode == 1
    assert "no valid records" in proc.stdout


def test_cli_rejects_start_index_past_the_end(tmp_path: Path) -> None:
    csv_path = tmp_path / "sample.csv"
    assert _run_cli(tmp_path, "sample-csv", "--output", str(csv_path)).returncode == 0

    proc = _run_cli(tmp_path, "run", "--csv", str(csv_path), "--start-index", "5")

    assert proc.returncode == 1
    assert "start index must be between 0 and 1" in proc.stdout
