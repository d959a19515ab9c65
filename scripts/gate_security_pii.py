#!/usr/bin/env python3
"""PII gate for the gateway sources.

Fails if:
- print( found in runtime code (src/**)
- A logger call mentions message or contact data (payloads, bodies, phone
  numbers, JIDs, push names, message content, QR codes) without going
  through safe_log_context / redact_* / mask_jid

Logger calls are checked as a whole, including their continuation lines.

Usage:
    python scripts/gate_security_pii.py [paths...]
"""

from __future__ import annotations

import re
import sys
from pathlib import Path

SENSITIVE_KEYWORDS = (
    "payload",
    "body",
    "request.json",
    "phone",
    "jid",
    "push_name",
    "pushname",
    "content",
    "qr_code",
    "base64",
)

PRINT_PATTERN = re.compile(r"\bprint\s*\(")

LOGGER_CALL_PATTERN = re.compile(
    r"\blogger\.(debug|info|warning|error|critical|exception)\s*\("
)

REDACTION_PATTERNS = (
    "safe_log_context",
    "redact_value",
    "redact_string",
    "mask_jid",
)


def _call_block(lines: list[str], start: int) -> str:
    """Text of the logger call starting on lines[start], up to its closing paren."""
    depth = 0
    parts: list[str] = []
    for line in lines[start:]:
        code = line.split("#")[0]
        parts.append(code)
        depth += code.count("(") - code.count(")")
        if depth <= 0:
            break
    return "\n".join(parts)


def check_source(text: str, label: str = "<source>") -> list[str]:
    """Violations in one module's source text."""
    errors: list[str] = []
    lines = text.splitlines()

    for index, line in enumerate(lines):
        code = line.split("#")[0]
        lineno = index + 1

        if PRINT_PATTERN.search(code):
            errors.append(f"{label}:{lineno}: print() not allowed in runtime code")

        if not LOGGER_CALL_PATTERN.search(code):
            continue
        block = _call_block(lines, index)
        if any(pattern in block for pattern in REDACTION_PATTERNS):
            continue
        lowered = block.lower()
        for keyword in SENSITIVE_KEYWORDS:
            if keyword in lowered:
                errors.append(
                    f"{label}:{lineno}: logger call with '{keyword}' "
                    "must use redaction (safe_log_context/redact_value/mask_jid)"
                )
    return errors


def check_paths(paths: list[Path]) -> list[str]:
    errors: list[str] = []
    for root in paths:
        files = [root] if root.is_file() else sorted(root.rglob("*.py"))
        for pyfile in files:
            try:
                text = pyfile.read_text(encoding="utf-8")
            except UnicodeDecodeError:
                continue
            errors.extend(check_source(text, str(pyfile)))
    return errors


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    paths = [Path(arg) for arg in args] or [Path(__file__).parent.parent / "src"]

    missing = [p for p in paths if not p.exists()]
    if missing:
        sys.stderr.write(f"Error: path not found: {missing[0]}\n")
        return 1

    errors = check_paths(paths)
    if errors:
        sys.stderr.write("PII gate FAILED - violations found:\n")
        for err in errors:
            sys.stderr.write(f"  {err}\n")
        return 1

    sys.stdout.write("PII gate PASSED\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
