"""Local deterministic stand-in for the ``pi`` agent, used by tests and smoke runs.

Accepts the same arguments as the real agent and prints an NDJSON event
stream. ``SESSION_BRAIN_ECHO_MODE`` selects the behaviour:

- ``ok`` (default): valid node output in a fenced json block;
- ``invalid``: an assistant reply without JSON;
- ``fail``: exit code 3 with a message on stderr;
- ``rate_limit``: exit code 1 with a rate-limit error on stderr;
- ``sleep``: sleep ``SESSION_BRAIN_ECHO_SLEEP_SECONDS`` (default 60), then ``ok``;
- ``ignore_term``: like ``sleep`` but ignores SIGTERM.
"""

from __future__ import annotations

import argparse
import json
import os
import re
import signal
import sys
import time

_SESSION_LINE = re.compile(r"^Session: (?P<path>.+)$", re.MULTILINE)


def build_node(*, session_file: str, provider: str, model: str, skills: list[str]) -> dict:
    return {
        "classification": {"type": "coding", "project": "echo-project"},
        "content": {
            "summary": f"Echo analysis of {os.path.basename(session_file)}",
            "outcome": "success",
        },
        "lessons": {"project": [], "task": []},
        "observations": {"modelsUsed": [f"{provider}/{model}"]},
        "semantic": {"tags": ["echo"]},
        "daemonMeta": {"skills": skills, "agent": "echo_agent"},
    }


def _events(node: dict, prompt: str) -> list[dict]:
    reply = "Analysis complete.\n\n```json\n" + json.dumps(node, indent=2) + "\n```"
    return [
        {"type": "agent_start"},
        {"type": "message_update", "delta": "Analysis"},
        {
            "type": "agent_end",
            "messages": [
                {"role": "user", "content": [{"type": "text", "text": prompt}]},
                {"role": "assistant", "content": [{"type": "text", "text": reply}]},
            ],
        },
    ]


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--provider", required=True)
    parser.add_argument("--model", required=True)
    parser.add_argument("--system-prompt", required=True)
    parser.add_argument("--skills", default="")
    parser.add_argument("--no-session", action="store_true")
    parser.add_argument("--mode", default="json")
    parser.add_argument("-p", dest="prompt", required=True)
    args = parser.parse_args(argv)

    mode = os.getenv("SESSION_BRAIN_ECHO_MODE", "ok")
    if mode == "fail":
        print("echo agent crashed", file=sys.stderr)
        return 3
    if mode == "rate_limit":
        print("Error: 429 rate limit exceeded", file=sys.stderr)
        return 1
    if mode in {"sleep", "ignore_term"}:
        if mode == "ignore_term":
            signal.signal(signal.SIGTERM, signal.SIG_IGN)
        time.sleep(float(os.getenv("SESSION_BRAIN_ECHO_SLEEP_SECONDS", "60")))

    match = _SESSION_LINE.search(args.prompt)
    session_file = match.group("path").strip() if match else "unknown"
    skills = [name for name in args.skills.split(",") if name]
    node = build_node(
        session_file=session_file,
        provider=args.provider,
        model=args.model,
        skills=skills,
    )
    events = _events(node, args.prompt)
    if mode == "invalid":
        events[-1]["messages"][-1]["content"] = [
            {"type": "text", "text": "I could not analyze it."},
        ]

    print("not json: agent banner")
    for event in events:
        print(json.dumps(event))
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
