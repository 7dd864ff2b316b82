"""Async NuGet v3 metadata resolver with per-run caching and cross-referencing."""

from __future__ import annotations

import asyncio
import posixpath
import re
from collections.abc import Iterable
from dataclasses import replace
from datetime import datetime
from typing import Any

import httpx
import structlog

from depinventory.engines.inventory_scanner.models import (
    Feed,
    FeedAuth,
    PackageDeclaration,
    PackageMetadata,
    SourceProjectMatch,
)
from depinventory.exceptions import RegistryError

log = structlog.get_logger("depinventory.engine")

NUGET_ORG = Feed("NuGet.org", "https://api.nuget.org/v3/index.json")

_DEFAULT_CONCURRENCY = 5
_MATCH_THRESHOLD = 0.7
_DESCRIPTION_LIMIT = 200
_SEVERITIES = {"0": "Low", "1": "Moderate", "2": "High", "3": "Critical"}
_USE_CURRENT_USER = "use_current_user"

_VERSION_RE = re.compile(r"^v?(\d+(?:\.\d+)*)(?:-([0-9A-Za-z.-]+))?(?:\+.*)?$")


def parse_version(value: str | None) -> tuple | None:
    """Sortable key for a NuGet version string, or ``None`` if unparsable.

    Release versions sort above pre-releases of the same numeric version.
    """
    if not value:
        return None
    m = _VERSION_RE.match(value.strip())
    if not m:
        return None
    numbers = [int(p) for p in m.group(1).split(".")]
    numbers += [0] * (4 - len(numbers))
    pre = m.group(2)
    if pre is None:
        return (tuple(numbers), 1, ())
    parts = tuple((0, int(p), "") if p.isdigit() else (1, 0, p.lower()) for p in pre.split("."))
    return (tuple(numbers), 0, parts)


def is_prerelease(value: str) -> bool:
    key = parse_version(value)
    return key is not None and key[1] == 0


def _levenshtein(source: str, target: str) -> int:
    if not source:
        return len(target)
    if not target:
        return len(source)
    previous = list(range(len(target) + 1))
    for i, s in enumerate(source, start=1):
        current = [i]
        for j, t in enumerate(target, start=1):
            cost = 0 if s == t else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def match_confidence(package_name: str, project_name: str | None) -> float:
    """How likely (0.0-1.0) it is that *project_name* builds *package_name*."""
    if not project_name:
        return 0.0
    pkg, proj = package_name.lower(), project_name.lower()
    if pkg == proj:
        return 1.0
    if pkg.startswith(proj) or proj.startswith(pkg):
        return min(len(pkg), len(proj)) / max(len(pkg), len(proj)) * 0.9
    if proj in pkg or pkg in proj:
        return 0.8
    similarity = 1.0 - _levenshtein(pkg, proj) / max(len(pkg), len(proj))
    return similarity if similarity > _MATCH_THRESHOLD else 0.0


def _project_package_name(project_path: str, project_name: str) -> str | None:
    """Guess the package a project produces from its file name or location."""
    stem = posixpath.splitext(posixpath.basename(project_path.replace("\\", "/")))[0]
    if stem:
        return stem
    if project_name and project_name != "Unknown":
        return project_name
    return None


def _parse_datetime(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _json_object(resp: httpx.Response, url: str) -> dict[str, Any]:
    data = resp.json()
    if not isinstance(data, dict):
        raise RegistryError(f"{url}: expected a JSON object")
    return data


class NuGetResolver:
    """Resolve package metadata from one or more NuGet v3 feeds.

    Feeds are tried in order; the first feed that knows a package wins.
    Results (including "not found") are cached for the resolver's lifetime.
    """

    def __init__(
        self,
        feeds: list[Feed] | None = None,
        feed_auth: list[FeedAuth] | None = None,
        *,
        max_concurrency: int = _DEFAULT_CONCURRENCY,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._feeds = list(feeds) if feeds else [NUGET_ORG]
        self._auth = {a.feed_name.strip().lower(): a for a in feed_auth or []}
        self._max_concurrency = max(1, max_concurrency)
        self._client = httpx.AsyncClient(
            timeout=30.0,
            follow_redirects=True,
            headers={"Accept": "application/json"},
            transport=transport,
        )
        self._cache: dict[str, PackageMetadata] = {}
        self._registration_bases: dict[str, str | None] = {}

    # ── lifecycle ──────────────────────────────────────────────────────────

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> NuGetResolver:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ── public ─────────────────────────────────────────────────────────────

    async def resolve_package(self, package_name: str) -> PackageMetadata:
        if not package_name or not package_name.strip():
            return PackageMetadata(package_name=package_name)

        key = package_name.lower()
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        info: PackageMetadata | None = None
        for feed in self._feeds:
            info = await self._resolve_from_feed(package_name, feed)
            if info is not None:
                break

        info = info or PackageMetadata(package_name=package_name)
        self._cache.setdefault(key, info)
        return info

    async def resolve(
        self,
        package_names: Iterable[str],
        declarations: Iterable[PackageDeclaration] | None = None,
    ) -> dict[str, PackageMetadata]:
        """Resolve many packages concurrently, then cross-reference and flag.

        When *declarations* are given, packages missing from nuget.org are
        matched against scanned projects, and packages whose in-use versions
        trail the latest release are marked outdated.
        """
        names = list(dict.fromkeys(package_names))
        sem = asyncio.Semaphore(self._max_concurrency)

        async def _one(name: str) -> tuple[str, PackageMetadata]:
            async with sem:
                return name, await self.resolve_package(name)

        results = dict(await asyncio.gather(*(_one(n) for n in names)))

        if declarations is not None:
            decls = list(declarations)
            self._cross_reference(results, decls)
            self._mark_outdated(results, decls)
        return results

    def cache_stats(self) -> tuple[int, int, int]:
        """Return ``(cached, found_on_nuget_org, not_found)``."""
        total = len(self._cache)
        found = sum(1 for info in self._cache.values() if info.on_nuget_org)
        return total, found, total - found

    def clear_cache(self) -> None:
        self._cache.clear()
        log.debug("nuget.cache_cleared")

    # ── enrichment ─────────────────────────────────────────────────────────

    @staticmethod
    def _cross_reference(
        results: dict[str, PackageMetadata], declarations: list[PackageDeclaration]
    ) -> None:
        projects: dict[tuple[str, str], str] = {}
        for d in declarations:
            guess = _project_package_name(d.project_path, d.project_name)
            if guess:
                projects[(d.repository_name, d.project_path)] = guess

        for name, info in list(results.items()):
            if info.on_nuget_org:
                continue
            best: SourceProjectMatch | None = None
            for (repo, path), guess in projects.items():
                confidence = match_confidence(name, guess)
                if confidence > _MATCH_THRESHOLD and (
                    best is None or confidence > best.confidence
                ):
                    best = SourceProjectMatch(guess, repo, path, confidence)
            if best is not None:
                results[name] = replace(info, source_projects=(best,))

    @staticmethod
    def _mark_outdated(
        results: dict[str, PackageMetadata], declarations: list[PackageDeclaration]
    ) -> None:
        used: dict[str, set[str]] = {}
        for d in declarations:
            if d.version:
                used.setdefault(d.package_name.lower(), set()).add(d.version)

        for name, info in list(results.items()):
            latest = parse_version(info.latest_version)
            if latest is None:
                continue
            outdated = [
                (key, v)
                for v in used.get(name.lower(), ())
                if (key := parse_version(v)) is not None and key < latest
            ]
            if outdated:
                _, oldest = min(outdated)
                results[name] = replace(info, is_outdated=True, resolved_version=oldest)

    # ── feed access ────────────────────────────────────────────────────────

    async def _resolve_from_feed(self, package_name: str, feed: Feed) -> PackageMetadata | None:
        try:
            base = await self._registration_base(feed)
            if base is None:
                return None
            entries = await self._catalog_entries(feed, base, package_name)
        except (httpx.HTTPError, ValueError, RegistryError) as exc:
            self._log_feed_error(feed, package_name, exc)
            return None

        stable = [
            e
            for e in entries
            if e.get("listed", True) is not False
            and parse_version(e.get("version")) is not None
            and not is_prerelease(e["version"])
        ]
        if not stable:
            return None
        stable.sort(key=lambda e: parse_version(e["version"]), reverse=True)
        return self._to_metadata(package_name, feed, stable)

    async def _registration_base(self, feed: Feed) -> str | None:
        if feed.url in self._registration_bases:
            return self._registration_bases[feed.url]

        resp = await self._get(feed, feed.url)
        data = _json_object(resp, feed.url)
        resources = data.get("resources", [])
        by_type = {r.get("@type"): r.get("@id") for r in resources if isinstance(r, dict)}
        base = None
        for wanted in ("RegistrationsBaseUrl/3.6.0", "RegistrationsBaseUrl/3.4.0", "RegistrationsBaseUrl"):
            if by_type.get(wanted):
                base = by_type[wanted]
                break
        if base is None:
            log.warning("nuget.no_registration_resource", feed=feed.name)
        self._registration_bases[feed.url] = base
        return base

    async def _catalog_entries(
        self, feed: Feed, base: str, package_name: str
    ) -> list[dict[str, Any]]:
        url = f"{base.rstrip('/')}/{package_name.lower()}/index.json"
        resp = await self._get(feed, url, allow_missing=True)
        if resp is None:
            return []

        entries: list[dict[str, Any]] = []
        for page in _json_object(resp, url).get("items", []):
            if not isinstance(page, dict):
                raise RegistryError(f"{url}: registration page is not a JSON object")
            leaves = page.get("items")
            if leaves is None and page.get("@id"):
                page_resp = await self._get(feed, page["@id"])
                leaves = _json_object(page_resp, page["@id"]).get("items", [])
            for leaf in leaves or []:
                entry = leaf.get("catalogEntry") if isinstance(leaf, dict) else None
                if isinstance(entry, dict):
                    entries.append(entry)
        return entries

    async def _get(
        self, feed: Feed, url: str, *, allow_missing: bool = False
    ) -> httpx.Response | None:
        resp = await self._client.get(url, auth=self._auth_for(feed))
        if allow_missing and resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp

    def _auth_for(self, feed: Feed) -> httpx.BasicAuth | None:
        auth = self._auth.get(feed.name.strip().lower())
        if auth is None or not auth.pat or auth.pat.lower() == _USE_CURRENT_USER:
            return None
        return httpx.BasicAuth(auth.username or "VssSessionToken", auth.pat)

    @staticmethod
    def _log_feed_error(feed: Feed, package_name: str, exc: Exception) -> None:
        status = exc.response.status_code if isinstance(exc, httpx.HTTPStatusError) else None
        if status in (401, 403):
            log.warning("nuget.auth_failed", feed=feed.name, package=package_name, status=status)
        else:
            log.debug("nuget.feed_error", feed=feed.name, package=package_name, error=str(exc))

    @staticmethod
    def _to_metadata(
        package_name: str, feed: Feed, stable: list[dict[str, Any]]
    ) -> PackageMetadata:
        latest = stable[0]
        on_nuget_org = "nuget.org" in feed.url.lower()

        description = latest.get("description") or None
        if description and len(description) > _DESCRIPTION_LIMIT:
            description = description[:_DESCRIPTION_LIMIT] + "..."

        tags = latest.get("tags") or []
        if isinstance(tags, str):
            tags = re.split(r"[\s,;]+", tags)

        deprecation = latest.get("deprecation")
        deprecation_message = None
        if isinstance(deprecation, dict):
            deprecation_message = deprecation.get("message") or ", ".join(
                deprecation.get("reasons", [])
            ) or "Package is deprecated"

        vulnerabilities = tuple(
            f"{_SEVERITIES.get(str(v.get('severity')), 'Unknown')}: {v.get('advisoryUrl', '')}".strip()
            for v in latest.get("vulnerabilities") or []
            if isinstance(v, dict)
        )

        authors = latest.get("authors")
        if isinstance(authors, list):
            authors = ", ".join(authors)

        version = latest["version"]
        return PackageMetadata(
            package_name=package_name,
            on_nuget_org=on_nuget_org,
            package_url=(
                f"https://www.nuget.org/packages/{package_name}" if on_nuget_org else feed.url
            ),
            description=description,
            authors=authors or None,
            project_url=latest.get("projectUrl") or None,
            published=_parse_datetime(latest.get("published")),
            license_url=latest.get("licenseUrl") or None,
            icon_url=latest.get("iconUrl") or None,
            tags=tuple(t for t in tags if t and t.strip()),
            is_deprecated=deprecation_message is not None,
            deprecation_message=deprecation_message,
            latest_version=version,
            resolved_version=version,
            is_vulnerable=bool(vulnerabilities),
            vulnerabilities=vulnerabilities,
            feed_name=feed.name,
            available_versions=tuple(e["version"] for e in stable),
        )
