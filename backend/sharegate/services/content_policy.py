from __future__ import annotations

import os
import urllib.parse
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field


def build_content_disposition(filename: str | None, disposition: str = "attachment") -> str:
    if not filename:
        return disposition
    ascii_name = filename.encode("ascii", "ignore").decode().replace('"', "") or "download"
    quoted = urllib.parse.quote(filename)
    return f"{disposition}; filename=\"{ascii_name}\"; filename*=UTF-8''{quoted}"


@dataclass(frozen=True)
class HeaderProfile:
    """How a class of files is presented to the client.

    ``content_type=None`` keeps the stored mime. ``disposition=None`` omits
    ``Content-Disposition`` entirely, which keeps download managers from
    treating the response as a file download.
    """

    name: str
    content_type: str | None = None
    disposition: str | None = "attachment"
    extra_headers: Mapping[str, str] = field(default_factory=dict)

    def headers(self, mime: str, filename: str) -> dict[str, str]:
        out = {"Content-Type": self.content_type or mime or "application/octet-stream"}
        if self.disposition:
            out["Content-Disposition"] = build_content_disposition(filename, self.disposition)
        out.update(self.extra_headers)
        out["X-Content-Profile"] = self.name
        return out


STANDARD = HeaderProfile(name="standard")

SENSITIVE = HeaderProfile(
    name="sensitive",
    content_type="text/plain",
    disposition=None,
    extra_headers={
        "X-Content-Type-Options": "nosniff",
        "X-Robots-Tag": "noindex, nofollow, noarchive",
        "X-Frame-Options": "SAMEORIGIN",
        "Referrer-Policy": "strict-origin-when-cross-origin",
    },
)

INLINE = HeaderProfile(
    name="inline",
    disposition="inline",
    extra_headers={
        "X-Frame-Options": "SAMEORIGIN",
        "Content-Security-Policy": "default-src 'none'; img-src 'self'; media-src 'self'; frame-ancestors 'self'",
    },
)


class ContentPolicy:
    """Maps a file-extension class to a header profile."""

    def __init__(self, classes: Mapping[str, Iterable[str]], profiles: Mapping[str, HeaderProfile],
                 default: HeaderProfile = STANDARD) -> None:
        self._by_ext: dict[str, HeaderProfile] = {}
        for cls, exts in classes.items():
            profile = profiles[cls]
            for ext in exts:
                ext = ext.lower()
                self._by_ext[ext if ext.startswith(".") else f".{ext}"] = profile
        self.default = default

    @classmethod
    def from_extensions(cls, sensitive: Iterable[str]) -> ContentPolicy:
        return cls({"sensitive": sensitive}, {"sensitive": SENSITIVE})

    def classify(self, filename: str | None) -> HeaderProfile:
        ext = os.path.splitext(filename or "")[1].lower()
        return self._by_ext.get(ext, self.default)

    def headers_for(self, display_name: str, original_name: str | None, mime: str) -> dict[str, str]:
        # the real name decides the class when the upload was renamed
        profile = self.classify(original_name or display_name)
        return profile.headers(mime, display_name)
