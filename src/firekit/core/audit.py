import locale
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

ANONYMOUS = "anonymous"
UNKNOWN_BROWSER = "Unknown"

# Checked in order, first match wins. Chrome's UA also contains "Safari", and
# Opera's contains "Chrome", so the order matters.
BROWSER_MARKERS = (
    ("Firefox", ("Firefox",)),
    ("Opera", ("Opera", "OPR")),
    ("Chrome", ("Chrome",)),
    ("Safari", ("Safari",)),
    ("Internet Explorer", ("MSIE", "Trident/")),
)


def classify_browser(user_agent: str) -> str:
    for family, markers in BROWSER_MARKERS:
        if any(marker in user_agent for marker in markers):
            return family
    return UNKNOWN_BROWSER


def iso_timestamp(now: Optional[datetime] = None) -> str:
    value = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _probe_language() -> str:
    try:
        language, _ = locale.getlocale()
    except (ValueError, TypeError):
        return ""
    return (language or "").replace("_", "-")


@dataclass(frozen=True)
class HostEnvironment:
    user_agent: str = ""
    platform: str = ""
    language: str = ""
    screen_width: Optional[int] = None
    screen_height: Optional[int] = None

    @classmethod
    def detect(cls) -> "HostEnvironment":
        """Describe the current process. There is no browser or screen here."""
        return cls(platform=sys.platform or "", language=_probe_language())

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> "HostEnvironment":
        lowered = {str(k).lower(): str(v) for k, v in headers.items()}
        width, height = _parse_resolution(lowered.get("x-screen-resolution", ""))
        language = lowered.get("accept-language", "").split(",")[0].split(";")[0].strip()
        return cls(
            user_agent=lowered.get("user-agent", ""),
            platform=lowered.get("sec-ch-ua-platform", "").strip('"'),
            language=language,
            screen_width=width,
            screen_height=height,
        )

    @property
    def screen_resolution(self) -> str:
        if self.screen_width is None or self.screen_height is None:
            return ""
        return f"{self.screen_width}x{self.screen_height}"


def _parse_resolution(value: str) -> tuple[Optional[int], Optional[int]]:
    width, sep, height = value.lower().partition("x")
    if not sep:
        return None, None
    try:
        return int(width), int(height)
    except ValueError:
        return None, None


@dataclass(frozen=True)
class ClientContext:
    user_agent: str = ""
    platform: str = ""
    language: str = ""
    screen_resolution: str = ""
    browser: str = UNKNOWN_BROWSER

    def to_dict(self) -> Dict[str, str]:
        return {
            "userAgent": self.user_agent,
            "platform": self.platform,
            "language": self.language,
            "screenResolution": self.screen_resolution,
            "browser": self.browser,
        }


@dataclass(frozen=True)
class AuditRecord:
    timestamp: str
    actor_id: str
    client_context: ClientContext = field(default_factory=ClientContext)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "actorId": self.actor_id,
            "clientContext": self.client_context.to_dict(),
        }


def _describe(environment: Optional[HostEnvironment]) -> ClientContext:
    try:
        env = environment if environment is not None else HostEnvironment.detect()
        user_agent = str(env.user_agent or "")
        return ClientContext(
            user_agent=user_agent,
            platform=str(env.platform or ""),
            language=str(env.language or ""),
            screen_resolution=env.screen_resolution,
            browser=classify_browser(user_agent),
        )
    except Exception:
        logger.warning("Could not describe host environment", exc_info=True)
        return ClientContext()


def stamp(
    actor_id: Optional[str] = None,
    environment: Optional[HostEnvironment] = None,
    now: Optional[datetime] = None,
) -> AuditRecord:
    actor = actor_id if actor_id and actor_id.strip() else ANONYMOUS
    return AuditRecord(
        timestamp=iso_timestamp(now),
        actor_id=actor,
        client_context=_describe(environment),
    )
