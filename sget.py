#!/usr/bin/env python3
import argparse
import hashlib
import json
import logging
import os
import posixpath
import re
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Set, Tuple, Union
from urllib.parse import urlparse

import requests
from bs4 import BeautifulSoup, FeatureNotFound, Tag
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

# -------------------- Config --------------------

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36"
)

MANIFEST_NAME = "url-log.json"
MAX_STEM_CHARS = 500
MAX_EXTENSION_CHARS = 16
HASHED_PREFIX_CHARS = 21
HASHED_DIGEST_CHARS = 9
CHUNK_SIZE = 64 * 1024

# attributes a local copy can never satisfy
STRIP_ATTRIBUTES = ("crossorigin", "integrity")

ABSOLUTE_URL_RE = re.compile(r"^(?:https?|ftp):", re.IGNORECASE)
UNSAFE_NAME_CHARS_RE = re.compile(r"[^A-Za-z0-9.-]")
SEPARATOR_RUN_RE = re.compile(r"([-_.])\1+")
INVALID_FILENAME_CHARS_RE = re.compile(r'[<>:"/\\|?*]')

log = logging.getLogger("sget")


# -------------------- Settings --------------------


@dataclass
class Settings:
    destination: Optional[str] = None
    htmlfile: str = "index.html"
    resdir: str = "res"
    timeout: float = 5.0
    user_agent: str = DEFAULT_USER_AGENT
    extra_headers: List[str] = field(default_factory=list)  # "Name: value"
    workers: int = 1
    parser: str = "lxml"


# -------------------- Errors --------------------


class MirrorError(Exception):
    pass


class FetchError(MirrorError):
    def __init__(self, url: str, status: Optional[int] = None, reason: str = ""):
        self.url = url
        self.status = status
        self.reason = reason
        if status is not None:
            msg = f"{url}: HTTP status error (expected 200, got {status})"
        else:
            msg = f"{url}: {reason or 'request failed'}"
        super().__init__(msg)


class FatalFetchError(FetchError):
    """The root page could not be retrieved; nothing is mirrored."""


class ResourceFetchError(FetchError):
    """A single resource could not be mirrored; the run continues."""


# -------------------- Utils --------------------


def sanitize_filename(name: str) -> str:
    name = INVALID_FILENAME_CHARS_RE.sub("_", name)
    name = name or "file"
    if name.startswith("."):
        name = "_" + name[1:]
    return name[:200]


def can_fetch_url(u: Optional[str]) -> bool:
    if not u:
        return False
    u = u.strip()
    if not u:
        return False
    if u.startswith(("#", "mailto:", "tel:", "javascript:", "data:", "blob:")):
        return False
    return True


def ensure_parent_dir(p: Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)


def atomic_write_json(path: Path, data: dict) -> None:
    ensure_parent_dir(path)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
    os.replace(tmp, path)


def default_destination(url: str) -> str:
    return sanitize_filename(urlparse(url).netloc) or "host"


# -------------------- Naming --------------------


def clean_name(value: str) -> str:
    """Reduce ``value`` to ``[A-Za-z0-9.-]`` without repeated or leading separators."""
    s = value.encode("ascii", "ignore").decode("ascii")
    s = UNSAFE_NAME_CHARS_RE.sub("-", s)
    s = SEPARATOR_RUN_RE.sub(r"\1", s)
    return s.lstrip("-_.")


def derive_filename(url: str, extension: Optional[str] = None) -> str:
    """Derive the local file name for ``url``.

    The stem is built from the last path segment and the raw query string.
    Stems longer than MAX_STEM_CHARS are shortened to a prefix plus part of
    their MD5 digest. The URL's own extension wins over ``extension``, the
    default supplied by the selector rule; without either the file is named
    ``*.unknown``.
    """
    p = urlparse(url)
    name = posixpath.basename(p.path.rstrip("/"))
    base, ext = posixpath.splitext(name)
    stem = clean_name(base + p.query)
    if len(stem) > MAX_STEM_CHARS:
        digest = hashlib.md5(stem.encode("ascii")).hexdigest()
        prefix = stem[:HASHED_PREFIX_CHARS].rstrip("-_.")
        stem = f"{prefix}-{digest[:HASHED_DIGEST_CHARS]}"
    stem = stem or "unknown"
    ext = clean_name(ext.lstrip("."))
    if len(ext) > MAX_EXTENSION_CHARS:
        ext = ""
    ext = ext or clean_name((extension or "").lstrip("."))[:MAX_EXTENSION_CHARS]
    return f"{stem}.{ext or 'unknown'}"


# -------------------- URL resolution --------------------


def resolve_url(raw: str, base_url: str) -> str:
    """Turn a reference found in markup into an absolute URL.

    >>> resolve_url("img/a.png", "https://example.com/blog/post.html")
    'https://example.com/blog/img/a.png'
    """
    raw = raw.strip()
    # ftp resources are rare but legal
    if ABSOLUTE_URL_RE.match(raw):
        return raw
    base = urlparse(base_url)
    if raw.startswith("//"):
        return f"{base.scheme}:{raw}"
    url = f"{base.scheme}://{base.netloc}"
    if raw.startswith("/"):
        return url + raw
    url += posixpath.dirname(base.path)
    if not url.endswith("/"):
        url += "/"
    return url + raw


# -------------------- HTTP --------------------


def build_session(settings: Settings) -> requests.Session:
    s = requests.Session()
    # failed fetches are never retried
    retry = Retry(total=0, read=False, raise_on_status=False)
    adapter = HTTPAdapter(max_retries=retry)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers["User-Agent"] = settings.user_agent
    for h in settings.extra_headers:
        if ":" not in h:
            log.warning("invalid header (no colon): %s", h)
            continue
        k, v = h.split(":", 1)
        s.headers[k.strip()] = v.strip()
    return s


@dataclass
class FetchResult:
    url: str
    status: Optional[int] = None
    response: Optional[requests.Response] = None
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.status == 200

    def error(self, kind=ResourceFetchError) -> FetchError:
        return kind(self.url, self.status, self.reason)

    def close(self) -> None:
        if self.response is not None:
            self.response.close()

    def content(self) -> bytes:
        if not self.ok:
            raise self.error()
        try:
            return self.response.content
        finally:
            self.close()

    def to_file(self, path: Path) -> int:
        if not self.ok:
            raise self.error()
        ensure_parent_dir(path)
        written = 0
        try:
            with open(path, "wb") as f:
                for chunk in self.response.iter_content(chunk_size=CHUNK_SIZE):
                    if not chunk:
                        continue
                    f.write(chunk)
                    written += len(chunk)
        finally:
            self.close()
        return written


class Fetcher:
    def __init__(
        self,
        session: requests.Session,
        timeout: float = 5.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.session = session
        self.timeout = timeout
        self.log = logger or log

    def fetch(self, url: str) -> FetchResult:
        self.log.info("downloading %r ...", url)
        try:
            resp = self.session.get(
                url,
                timeout=(self.timeout, self.timeout),
                stream=True,
                allow_redirects=True,
            )
        except requests.RequestException as e:
            self.log.warning("error downloading %s: %s", url, e)
            return FetchResult(url, reason=str(e))
        result = FetchResult(url, status=resp.status_code, response=resp)
        if not result.ok:
            self.log.warning("failed %s -> HTTP %s", url, resp.status_code)
            result.close()
        return result


# -------------------- HTML utils --------------------


def bs4_parse(markup: Union[str, bytes], features: str = "lxml") -> BeautifulSoup:
    try:
        return BeautifulSoup(markup, features)
    except FeatureNotFound:
        log.warning("parser %r not available, using html.parser", features)
        return BeautifulSoup(markup, "html.parser")


def serialize_html(soup: BeautifulSoup) -> str:
    return soup.decode(formatter="html")


# -------------------- Rules --------------------


@dataclass(frozen=True)
class LocalAsset:
    url: str
    local_path: str
    destination: Path


@dataclass(frozen=True)
class SelectorRule:
    selector: str
    attribute: str
    extension: Optional[str] = None
    post: Optional[Callable[[LocalAsset], None]] = None


# Static guesses at where resources live. Anything loaded by scripts at
# runtime, or referenced from inside stylesheets, is out of reach.
DEFAULT_RULES: Tuple[SelectorRule, ...] = (
    # javascript
    SelectorRule("script[src]", "src", "js"),
    SelectorRule("link[href][as=script]", "href", "js"),
    # images
    SelectorRule("img", "src"),
    SelectorRule("image", "src"),
    SelectorRule("img[data-thumb]", "data-thumb"),
    SelectorRule("img[data-src]", "data-src"),
    SelectorRule("input[src][type=image]", "src"),
    # css
    SelectorRule("link[rel=stylesheet][href]", "href", "css"),
    # favicons
    SelectorRule("link[rel*=icon][href]", "href"),
    SelectorRule("link[rel*=shortcut][href]", "href"),
)


@dataclass
class ResourceReference:
    raw: str
    node: Tag
    rule: SelectorRule


# -------------------- Manifest --------------------


@dataclass
class ManifestEntry:
    url: str
    local: Path


@dataclass
class MirrorManifest:
    mainpage: str
    entries: List[ManifestEntry] = field(default_factory=list)

    def add(self, url: str, local: Path) -> None:
        self.entries.append(ManifestEntry(url, local))

    def to_dict(self) -> dict:
        return {
            "info": {"mainpage": self.mainpage},
            "urls": [{"url": e.url, "local": str(e.local)} for e in self.entries],
        }

    def write(self, path: Path) -> None:
        atomic_write_json(path, self.to_dict())


# -------------------- Pipeline --------------------


@dataclass
class PipelineReport:
    fetched: int = 0
    reused: int = 0
    rewritten: int = 0
    failures: List[ResourceFetchError] = field(default_factory=list)


class AssetPipeline:
    def __init__(
        self,
        fetcher: Fetcher,
        destination: Path,
        resdir: str = "res",
        rules: Sequence[SelectorRule] = DEFAULT_RULES,
        workers: int = 1,
        logger: Optional[logging.Logger] = None,
    ):
        self.fetcher = fetcher
        self.destination = Path(destination)
        self.resdir = resdir
        self.rules = tuple(rules)
        self.workers = max(1, workers)
        self.log = logger or log

    def collect(self, soup: BeautifulSoup) -> Iterator[ResourceReference]:
        handled: Set[Tuple[int, str]] = set()
        for rule in self.rules:
            self.log.debug("++ processing selector %r ...", rule.selector)
            for node in soup.select(rule.selector):
                for rm in STRIP_ATTRIBUTES:
                    if rm in node.attrs:
                        del node.attrs[rm]
                raw = node.get(rule.attribute)
                if not isinstance(raw, str) or not can_fetch_url(raw):
                    continue
                # one manifest entry per attribute, not one per rule match:
                # overlapping rules (e.g. "shortcut icon") see each attribute once
                key = (id(node), rule.attribute)
                if key in handled:
                    continue
                handled.add(key)
                yield ResourceReference(raw, node, rule)

    def locate(self, url: str, rule: SelectorRule) -> LocalAsset:
        filename = derive_filename(url, rule.extension)
        local_path = posixpath.join(self.resdir, filename)
        return LocalAsset(url, local_path, self.destination / self.resdir / filename)

    def materialize(
        self, candidates: List[Tuple[LocalAsset, SelectorRule]]
    ) -> Tuple[Optional[str], List[ResourceFetchError]]:
        """Fetch the first candidate URL that succeeds into the shared destination.

        Returns the URL whose body now fills the destination, or None.
        """
        failures: List[ResourceFetchError] = []
        for asset, rule in candidates:
            result = self.fetcher.fetch(asset.url)
            if not result.ok:
                failures.append(result.error(ResourceFetchError))
                continue
            self.log.info("storing as %r", str(asset.destination))
            try:
                result.to_file(asset.destination)
            except requests.RequestException as e:
                self.log.warning("error downloading %s: %s", asset.url, e)
                failures.append(ResourceFetchError(asset.url, reason=str(e)))
                continue
            except OSError as e:
                self.log.warning("failed to write %s: %s", asset.destination, e)
                failures.append(ResourceFetchError(asset.url, reason=str(e)))
                continue
            if rule.post is not None:
                rule.post(asset)
            return asset.url, failures
        return None, failures

    def process(
        self, soup: BeautifulSoup, base_url: str, manifest: MirrorManifest
    ) -> PipelineReport:
        report = PipelineReport()
        planned: List[Tuple[ResourceReference, LocalAsset]] = []
        pending: Dict[Path, List[Tuple[LocalAsset, SelectorRule]]] = {}
        on_disk: Set[Path] = set()
        fetched_from: Dict[Path, str] = {}

        for ref in self.collect(soup):
            self.log.info("checking %r ...", ref.raw)
            url = resolve_url(ref.raw, base_url)
            asset = self.locate(url, ref.rule)
            manifest.add(url, asset.destination)
            planned.append((ref, asset))
            dest = asset.destination
            if dest in on_disk:
                continue
            if dest in pending:
                if all(a.url != url for a, _ in pending[dest]):
                    pending[dest].append((asset, ref.rule))
                continue
            if dest.is_file():
                self.log.debug("already have %r", str(dest))
                on_disk.add(dest)
                report.reused += 1
                continue
            pending[dest] = [(asset, ref.rule)]

        for dest, (winner, failures) in zip(pending, self._fetch_all(list(pending.values()))):
            report.failures.extend(failures)
            if winner is not None:
                fetched_from[dest] = winner
                report.fetched += 1

        for ref, asset in planned:
            dest = asset.destination
            # a node is only pointed at a file fetched from its own URL
            if dest not in on_disk and fetched_from.get(dest) != asset.url:
                self.log.warning("could not mirror %r, leaving it unchanged", ref.raw)
                continue
            self.log.info("rewriting %r", ref.raw)
            ref.node[ref.rule.attribute] = asset.local_path
            report.rewritten += 1
        return report

    def _fetch_all(
        self, jobs: List[List[Tuple[LocalAsset, SelectorRule]]]
    ) -> List[Tuple[Optional[str], List[ResourceFetchError]]]:
        if self.workers == 1 or len(jobs) < 2:
            return [self.materialize(job) for job in jobs]
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            futures = [pool.submit(self.materialize, job) for job in jobs]
            return [fut.result() for fut in futures]


# -------------------- Session --------------------


class MirrorSession:
    def __init__(
        self,
        url: str,
        settings: Settings,
        fetcher: Optional[Fetcher] = None,
        rules: Sequence[SelectorRule] = DEFAULT_RULES,
        logger: Optional[logging.Logger] = None,
    ):
        self.url = url
        self.settings = settings
        self.log = logger or log
        self.destination = Path(settings.destination or default_destination(url)).resolve()
        self.fetcher = fetcher or Fetcher(
            build_session(settings), settings.timeout, self.log
        )
        self.pipeline = AssetPipeline(
            self.fetcher,
            self.destination,
            settings.resdir,
            rules=rules,
            workers=settings.workers,
            logger=self.log,
        )
        self.manifest = MirrorManifest(mainpage=url)

    @property
    def html_path(self) -> Path:
        return self.destination / self.settings.htmlfile

    @property
    def manifest_path(self) -> Path:
        return self.destination / MANIFEST_NAME

    def fetch_page(self) -> bytes:
        page = self.fetcher.fetch(self.url)
        if not page.ok:
            raise page.error(FatalFetchError)
        try:
            return page.content()
        except requests.RequestException as e:
            raise FatalFetchError(self.url, reason=str(e)) from e

    def run(self) -> PipelineReport:
        body = self.fetch_page()
        try:
            soup = bs4_parse(body, self.settings.parser)
            (self.destination / self.settings.resdir).mkdir(parents=True, exist_ok=True)
            report = self.pipeline.process(soup, self.url, self.manifest)
            ensure_parent_dir(self.html_path)
            self.html_path.write_text(serialize_html(soup), encoding="utf-8")
        finally:
            self.manifest.write(self.manifest_path)
        self.log.info(
            "mirrored %s: %d fetched, %d reused, %d failed",
            self.url,
            report.fetched,
            report.reused,
            len(report.failures),
        )
        return report


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool, List[str]]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        import tomllib

        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        import yaml

        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise RuntimeError("Top-level YAML must be a mapping")
            return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="sget",
        description="Mirror a single web page and the resources it embeds.",
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)

    p.add_argument("urls", nargs="*", metavar="URL", help="http(s) URL of the page")
    p.add_argument(
        "-d",
        "--destination",
        type=str,
        default=None,
        help="directory to store the website (default: the URL's host)",
    )
    p.add_argument(
        "-f",
        "--htmlfile",
        type=str,
        default="index.html",
        help="use HTMLFILE instead of index.html",
    )
    p.add_argument(
        "--resdir",
        type=str,
        default="res",
        help="use RESDIR instead of 'res' as resources directory name",
    )
    p.add_argument("--timeout", type=float, default=5.0, help="request timeout seconds")
    p.add_argument(
        "--user-agent", type=str, default=DEFAULT_USER_AGENT, help="User-Agent header"
    )
    p.add_argument(
        "--header",
        action="append",
        default=[],
        help="extra request header 'Name: value'",
    )
    p.add_argument("--workers", type=int, default=1, help="concurrent downloads")
    p.add_argument(
        "--parser", type=str, default="lxml", help="BeautifulSoup tree builder"
    )
    p.add_argument("--verbose", action="store_true", help="debug logging")
    return p


def parse_args(
    argv: Optional[List[str]] = None, parser: Optional[argparse.ArgumentParser] = None
) -> argparse.Namespace:
    parser = parser or build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        if isinstance(cfg, dict):
            flat = {k: v for k, v in cfg.items() if not isinstance(v, dict)}
            for g in ("general", "http", "output"):
                if isinstance(cfg.get(g), dict):
                    flat.update(cfg[g])
            flat = {k.replace("-", "_"): v for k, v in flat.items()}
            if "extra_headers" in flat:
                flat["header"] = flat.pop("extra_headers")
            parser.set_defaults(**flat)
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_arg_parser()
    args = parse_args(argv, parser)
    if not args.urls:
        parser.print_usage()
        return
    if len(args.urls) > 1:
        parser.error("can only process one URL at a time")
    url = args.urls[0]
    if urlparse(url).scheme not in {"http", "https"}:
        print("Invalid URL. Use http:// or https://")
        sys.exit(1)

    settings = Settings(
        destination=args.destination,
        htmlfile=args.htmlfile,
        resdir=args.resdir,
        timeout=max(0.1, args.timeout),
        user_agent=args.user_agent,
        extra_headers=args.header or [],
        workers=max(1, args.workers),
        parser=args.parser,
    )

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    session = MirrorSession(url, settings)
    try:
        report = session.run()
    except FatalFetchError as e:
        log.error("critical error: %s", e)
        sys.exit(1)
    print(f"Saved to: {session.html_path}")
    if report.failures:
        print(f"{len(report.failures)} resource(s) could not be mirrored")


if __name__ == "__main__":
    main()
