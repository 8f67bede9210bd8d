import subprocess
import sys


def test_cli_help() -> None:
    cp = subprocess.run(
        [sys.executable, "-m", "bimerascan", "--help"],
        check=True,
        capture_output=True,
        text=True,
    )
    assert "bimerascan" in cp.stdout.lower()
    assert "detect" in cp.stdout
