"""Local stand-in for the assistant CLI, used by integration tests.

Accepts the same flags the executor renders. Prompt directives drive behaviour:
``[fail]`` exits 2 with a stderr message, ``[fail-stdout]`` exits 1 with the message on
stdout only, ``[rate-limit:<ts>]`` prints the usage-limit marker and exits 1,
``[sleep:<seconds>]`` sleeps before answering, ``[empty]`` prints nothing, ``[garbage]``
prints non-JSON text. When ``AGENT_PIPELINE_ECHO_LOG`` is set, every invocation appends
its argv as one JSON line to that file.
"""

from __future__ import annotations

import argparse
import json
import os
import re
import sys
import time
from uuid import uuid4

from agent_pipeline.orchestrator.rate_limit import RATE_LIMIT_MARKER

_RATE_LIMIT_DIRECTIVE = re.compile(r"\[rate-limit:(\d+)\]")
_SLEEP_DIRECTIVE = re.compile(r"\[sleep:([0-9.]+)\]")
ECHO_AGENT_VERSION = "1.0.0"


def main(argv: list[str] | None = None) -> int:
    """Emulate one CLI invocation."""

    args_list = sys.argv[1:] if argv is None else argv
    parser = argparse.ArgumentParser(prog="echo-agent")
    parser.add_argument("--version", action="version", version=f"echo-agent {ECHO_AGENT_VERSION}")
    parser.add_argument("-p", "--print", dest="prompt", default="")
    parser.add_argument("-r", "--resume", dest="resume", default=None)
    parser.add_argument("--continue", dest="continue_conversation", action="store_true")
    parser.add_argument("--model", default="auto")
    parser.add_argument("--output-format", default="text")
    args, _unknown = parser.parse_known_args(args_list)

    log_path = os.getenv("AGENT_PIPELINE_ECHO_LOG")
    if log_path:
        with open(log_path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps({"argv": args_list, "cwd": os.getcwd()}) + "\n")

    prompt = args.prompt
    sleep_match = _SLEEP_DIRECTIVE.search(prompt)
    if sleep_match:
        time.sleep(float(sleep_match.group(1)))

    rate_match = _RATE_LIMIT_DIRECTIVE.search(prompt)
    if rate_match:
        sys.stdout.write(f"{RATE_LIMIT_MARKER}|{rate_match.group(1)}\n")
        return 1
    if "[fail]" in prompt:
        sys.stderr.write(f"echo agent failure: {prompt}\n")
        return 2
    if "[fail-stdout]" in prompt:
        sys.stdout.write(f"echo agent failure on stdout: {prompt}\n")
        return 1
    if "[empty]" in prompt:
        return 0
    if "[garbage]" in prompt:
        sys.stdout.write("{not json\n")
        return 0

    session_id = args.resume or f"ses_{uuid4().hex}"
    result = f"echo: {prompt}"
    if args.output_format == "json":
        payload = {
            "type": "result",
            "result": result,
            "session_id": session_id,
            "resumed_from": args.resume,
            "model": args.model,
        }
        sys.stdout.write(json.dumps(payload) + "\n")
    else:
        sys.stdout.write(result + "\n")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
