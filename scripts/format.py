"""Format and lint the relay sources with ruff.

Usage:
    uv run python scripts/format.py          # rewrite files in place
    uv run python scripts/format.py --check  # fail if anything would change
"""

import argparse
import subprocess
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent


def _targets() -> list[str]:
    tests = sorted(str(p.relative_to(ROOT)) for p in ROOT.glob("test_*.py"))
    return ["relay", "scripts", *tests]


def _ruff(*args: str) -> None:
    subprocess.run(["uv", "run", "ruff", *args], check=True, cwd=ROOT)


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--check", action="store_true", help="report instead of fixing")
    args = parser.parse_args()

    targets = _targets()
    try:
        if args.check:
            _ruff("format", "--check", *targets)
            _ruff("check", *targets)
        else:
            _ruff("format", *targets)
            # whitespace and blank-line rules only need the preview fixer
            _ruff(
                "check", "--preview", "--fix", "--unsafe-fixes",
                "--select", "W291,W293,E3", *targets,
            )  # fmt: skip
            _ruff("check", "--fix", "--ignore", "E501", *targets)
    except subprocess.CalledProcessError as e:
        print(f"ruff failed with exit code {e.returncode}", file=sys.stderr)
        sys.exit(e.returncode)
    except FileNotFoundError:
        print("uv not found; install it or run ruff directly", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
