from __future__ import annotations

"""Redaction utility.

CONTRACT
- Inputs: captured command output, rendered commands
- Outputs:
  - redacted text string
- Invariants:
  - Masks credential values (SQL PASSWORD literals, KEY=value env assignments,
    credentials embedded in URLs, bearer tokens) with [REDACTED]
  - Keeps the surrounding text so failures stay readable
  - Best-effort; does not guarantee all secrets are caught
- Failure:
  - None (returns original text when nothing matches)
"""

import re
from dataclasses import dataclass, field
from pathlib import Path

# Each pattern keeps group 1 (the prefix) and replaces the rest of the match.
DEFAULT_PATTERNS = [
    re.compile(r"(PASSWORD\s+)'[^']*'", re.IGNORECASE),
    re.compile(r"\b((?:[A-Z0-9_]*(?:PASSWORD|SECRET|TOKEN)[A-Z0-9_]*)=)\S+"),
    re.compile(r"(://[^:/@\s]+:)[^@\s]+(?=@)"),
    re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+"),
]


@dataclass(frozen=True)
class Redactor:
    patterns: list[re.Pattern] = field(default_factory=lambda: list(DEFAULT_PATTERNS))
    literals: tuple[str, ...] = ()

    def redact(self, text: str) -> str:
        out = text
        for pat in self.patterns:
            out = pat.sub(lambda m: m.group(1) + "[REDACTED]", out)
        for lit in self.literals:
            if lit:
                out = out.replace(lit, "[REDACTED]")
        return out


if __name__ == "__main__":
    import argparse
    import sys

    parser = argparse.ArgumentParser(description="Redact secrets from text")
    parser.add_argument("--text", help="Text to redact")
    parser.add_argument("--file", help="File to read and redact")
    args = parser.parse_args()

    r = Redactor()
    if args.text:
        print(r.redact(args.text))
    elif args.file:
        try:
            content = Path(args.file).read_text(encoding="utf-8")
            print(r.redact(content))
        except Exception as e:
            print(f"Error reading file: {e}", file=sys.stderr)
            sys.exit(1)
    else:
        parser.print_help()
        sys.exit(1)
