from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


# Stand-in for the clawdbot command-line tool. Every invocation appends its
# argv as one JSON line to $STUB_LOG; behaviour is steered by STUB_* variables.
STUB_CLI_SOURCE = """
import json
import os
import sys
import time

args = sys.argv[1:]
log_path = os.environ.get("STUB_LOG")
if log_path:
    with open(log_path, "a", encoding="utf-8") as fp:
        fp.write(json.dumps(args) + "\\n")

if args[:1] == ["onboard"]:
    print("onboard output")
    print("onboard warning", file=sys.stderr)
    code = int(os.environ.get("STUB_ONBOARD_EXIT", "0"))
    if code == 0 and os.environ.get("STUB_ONBOARD_WRITES", "1") == "1":
        with open(os.environ["CLAWDBOT_CONFIG_PATH"], "w", encoding="utf-8") as fp:
            fp.write("{}")
    sys.exit(code)

if args[:2] == ["config", "set"]:
    key = args[3] if args[2] == "--json" else args[2]
    print("set " + key)
    sys.exit(1 if key == os.environ.get("STUB_FAIL_KEY") else 0)

if args[:2] == ["gateway", "run"]:
    if os.environ.get("STUB_GATEWAY_MODE", "serve") == "exit":
        sys.exit(3)
    time.sleep(60)
    sys.exit(0)

if args[:2] == ["pairing", "approve"]:
    print("approved " + " ".join(args[2:]))
    sys.exit(0)

print("unknown command: " + " ".join(args))
sys.exit(2)
"""


@pytest.fixture
def stub_cli_command(tmp_path: Path) -> list[str]:
    script = tmp_path / "clawdbot_stub.py"
    script.write_text(STUB_CLI_SOURCE, encoding="utf-8")
    return [sys.executable, str(script)]


@pytest.fixture
def stub_log(tmp_path: Path) -> Path:
    return tmp_path / "stub-calls.log"
