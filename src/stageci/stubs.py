# stubs.py
"""
Request interception config consumed by verification jobs.

A verification job declares fixed responses for outbound calls so its result
does not depend on an upstream source returning different data each time.
The engine only owns the config format; the test harness inside the job
(browser test runner, HTTP mock, ...) reads it from $STAGECI_STUB_CONFIG.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from fnmatch import fnmatch
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .errors import UnmatchedRequest

STUB_CONFIG_ENV = "STAGECI_STUB_CONFIG"
STUB_CONFIG_FILE = ".stageci-stubs.json"


@dataclass(frozen=True)
class StubResponse:
    status: int
    body: Any = None

    def text(self) -> str:
        if isinstance(self.body, str):
            return self.body
        return json.dumps(self.body)


@dataclass(frozen=True)
class InterceptRule:
    method: str
    url: str          # glob, e.g. "https://api.quotable.io/*"
    status: int = 200
    body: Any = None

    def matches(self, method: str, url: str) -> bool:
        if self.method != "*" and self.method.upper() != method.upper():
            return False
        return fnmatch(url, self.url)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InterceptRule":
        if "url" not in data:
            raise ValueError(f"intercept rule needs a url: {data!r}")
        return cls(
            method=str(data.get("method", "GET")).upper(),
            url=str(data["url"]),
            status=int(data.get("status", 200)),
            body=data.get("body"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"method": self.method, "url": self.url, "status": self.status, "body": self.body}


@dataclass(frozen=True)
class StubConfig:
    rules: Tuple[InterceptRule, ...] = field(default_factory=tuple)
    strict: bool = False

    def match(self, method: str, url: str) -> Optional[StubResponse]:
        for rule in self.rules:
            if rule.matches(method, url):
                return StubResponse(status=rule.status, body=rule.body)
        return None

    def respond(self, method: str, url: str) -> Optional[StubResponse]:
        """
        Fixed response for a matching call, None to let it pass through.
        In strict mode an unmatched call is an error instead.
        """
        resp = self.match(method, url)
        if resp is None and self.strict:
            raise UnmatchedRequest(
                f"no intercept rule for {method.upper()} {url}",
                details={"rules": len(self.rules)},
            )
        return resp

    # -----------------------------------------------------------------
    # (de)serialization
    # -----------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StubConfig":
        rules: List[InterceptRule] = [InterceptRule.from_dict(r) for r in data.get("rules", [])]
        return cls(rules=tuple(rules), strict=bool(data.get("strict", False)))

    def to_dict(self) -> Dict[str, Any]:
        return {"strict": self.strict, "rules": [r.to_dict() for r in self.rules]}

    def dump(self, path: str | Path) -> Path:
        p = Path(path)
        p.write_text(json.dumps(self.to_dict(), indent=2, sort_keys=True), encoding="utf-8")
        return p

    @classmethod
    def load(cls, path: str | Path) -> "StubConfig":
        return cls.from_dict(json.loads(Path(path).read_text(encoding="utf-8")))
