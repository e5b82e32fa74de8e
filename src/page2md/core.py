"""Core pipeline for page2md."""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import List, Optional, Tuple

from .pandoc_filter import CODEBLOCK_LANGUAGE_ENV

LOG = logging.getLogger("page2md")

EXIT_INVALID_ARGS = 6
EXIT_SOURCE_NOT_FOUND = 7

CONTENT_ROOT_ENV = "PAGE2MD_CONTENT_ROOT"
SITE_URL_ENV = "PAGE2MD_SITE_URL"
DEFAULT_SITE_URL = "http://localhost:8055"

PANDOC_BIN = "pandoc"
FILTER_SCRIPT = "page2md-filter"
MARKDOWN_WRITER = "markdown_phpextra+backtick_code_blocks"

SOURCE_SUFFIX = ".php"
MARKDOWN_SUFFIX = ".md"
AST_SUFFIX = ".ast"

# Pages under version folders older than this are not migrated any more.
LINK_AUDIT_MIN_MAJOR_VERSION = 16
LINK_AUDIT_HTML_SUFFIXES = (".html", ".htm")

MODERN_TITLE_PATTERNS = (
    re.compile(r"'title'[ ]*=>[ ]*\"([^\"]+)\""),
    re.compile(r"'title'[ ]*=>[ ]*'([^']+)'"),
)
LEGACY_TITLE_RE = re.compile(r"\$pagename[ ]*=[ ]*'([^']+)'")
# Statement-leading head([...]) only, never document.head(...) and the like.
HEAD_CALL_RE = re.compile(r"^([ \t]*(?:<\?php[ \t]+)?)head\(\s*\[[^)]*\);?", re.MULTILINE)
LEGACY_INCLUDES = (
    "require_once('header.php');",
    "include('footer.php');",
)
FIRST_LINE_HEADING_RE = re.compile(r"^#(?!#)[ \t]*(\S.*?)[ \t]*$")
KEY_SPAN_RE = re.compile(r'<span class="key">(.+?)</span>')
VERSION_FOLDER_RE = re.compile(r"(\d+)\.(\d+)")


class ConversionError(RuntimeError):
    exit_code = EXIT_INVALID_ARGS


class SourceNotFoundError(ConversionError):
    exit_code = EXIT_SOURCE_NOT_FOUND


@dataclass
class PagePaths:
    location: str
    source: Path
    destination: Path
    ast: Path
    url: str


@dataclass
class SiteLayout:
    content_root: Path
    site_url: str = DEFAULT_SITE_URL

    @classmethod
    def from_env(cls, content_root: Optional[str] = None, site_url: Optional[str] = None) -> "SiteLayout":
        root = content_root or os.environ.get(CONTENT_ROOT_ENV) or os.getcwd()
        url = site_url or os.environ.get(SITE_URL_ENV) or DEFAULT_SITE_URL
        return cls(content_root=Path(root).expanduser().resolve(), site_url=url)

    def resolve(self, location: str) -> PagePaths:
        """Map a site-relative page location to its source, output and URL."""
        raw = PurePosixPath(location.strip().strip("/"))
        relative = (raw.parent / raw.stem).as_posix()
        if not raw.name or relative in ("", "."):
            raise ConversionError(f"Invalid page location: {location!r}")
        base = self.content_root / relative
        return PagePaths(
            location=relative,
            source=base.with_name(base.name + SOURCE_SUFFIX),
            destination=base.with_name(base.name + MARKDOWN_SUFFIX),
            ast=base.with_name(base.name + AST_SUFFIX),
            url=f"{self.site_url.rstrip('/')}/{relative}",
        )


@dataclass
class ConversionOptions:
    ast: bool = False
    finalize: bool = False
    codeblock_language: Optional[str] = None
    verbose: bool = False
    debug: bool = False
    link_check: bool = True


@dataclass
class StrippedSource:
    text: str
    title: str
    legacy_title: Optional[str]


@dataclass
class ConversionResult:
    paths: PagePaths
    title: str
    referencing_pages: List[Path] = field(default_factory=list)
    deleted_source: bool = False


def _resolve_log_level(verbose: bool, debug: bool) -> int:
    return logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)


def _configure_page2md_logger(level: int) -> None:
    LOG.setLevel(level)
    LOG.propagate = False
    if not LOG.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        handler.setLevel(level)
        LOG.addHandler(handler)
    else:
        for handler in LOG.handlers:
            handler.setLevel(level)
            if handler.formatter is None:
                handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))


def setup_logging(verbose: bool, debug: bool) -> None:
    level = _resolve_log_level(verbose, debug)
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")
    _configure_page2md_logger(level)


def safe_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8", newline="\n")


def read_text_exact(path: Path) -> str:
    with path.open("r", encoding="utf-8", newline="") as f:
        return f.read()


def write_text_exact(path: Path, text: str) -> None:
    # newline="" keeps the page's own line endings.
    with path.open("w", encoding="utf-8", newline="") as f:
        f.write(text)


def _decode_title(title: str) -> str:
    return title.replace("&amp;", "&")


def extract_modern_title(text: str) -> str:
    for pattern in MODERN_TITLE_PATTERNS:
        match = pattern.search(text)
        if match:
            return _decode_title(match.group(1))
    return ""


def _title_comment(title: str) -> str:
    quote = "'" if '"' in title else '"'
    return f"// 'title' => {quote}{title}{quote}"


def strip_template(text: str) -> StrippedSource:
    """Remove template header/footer calls so pandoc only sees the page body.

    The modern ``head([...])`` call is replaced with a comment that keeps its
    title readable on later runs, which makes the operation idempotent.
    """
    title = extract_modern_title(text)
    insert = _title_comment(title) if title else ""
    stripped = HEAD_CALL_RE.sub(lambda match: match.group(1) + insert, text, count=1)
    for statement in LEGACY_INCLUDES:
        stripped = stripped.replace(statement, "", 1)

    legacy_title = None
    legacy_match = LEGACY_TITLE_RE.search(stripped)
    if legacy_match:
        legacy_title = _decode_title(legacy_match.group(1))
        title = legacy_title
    return StrippedSource(text=stripped, title=title, legacy_title=legacy_title)


def restore_key_markup(text: str) -> str:
    return KEY_SPAN_RE.sub(r"<key>\1</key>", text)


def build_markdown(converted: str, title: str, legacy_title: Optional[str]) -> Tuple[str, str]:
    """Turn pandoc output into the final page text.

    A leading level-1 heading becomes the frontmatter title unless the page
    declared a legacy title. Returns the new text and the title used.
    """
    first_line, _, rest = converted.partition("\n")
    body = converted
    heading = FIRST_LINE_HEADING_RE.match(first_line)
    if heading and legacy_title is None:
        title = heading.group(1)
        body = rest

    if title:
        text = f"---\ntitle: {title}\n---\n{body}"
    else:
        LOG.warning("Could not determine the page title")
        text = body
    return restore_key_markup(text), title


def check_prerequisites() -> str:
    pandoc_bin = shutil.which(PANDOC_BIN)
    if pandoc_bin is None:
        raise ConversionError("pandoc is not installed or not on PATH.")
    return pandoc_bin


def check_site_available(url: str, timeout: float = 2.0) -> bool:
    request = urllib.request.Request(url, method="HEAD")
    try:
        with urllib.request.urlopen(request, timeout=timeout):
            return True
    except urllib.error.HTTPError:
        # The server answered; pandoc will report the page error itself.
        return True
    except (urllib.error.URLError, TimeoutError, ValueError, OSError):
        return False


def resolve_filter_command() -> str:
    installed = shutil.which(FILTER_SCRIPT)
    if installed:
        return installed
    return str(Path(__file__).with_name("pandoc_filter.py"))


def _run_pandoc(cmd: List[str], env: Optional[dict] = None) -> str:
    LOG.info("Executing: %s", subprocess.list2cmdline(cmd))
    proc = subprocess.run(
        cmd,
        check=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        env=env,
    )
    output = (proc.stdout or "").strip()
    if output:
        LOG.info("pandoc output:\n%s", output)
    return output


def dump_ast(paths: PagePaths) -> None:
    # No filter here: the raw tree is the reference for new filter rules.
    _run_pandoc([PANDOC_BIN, "--from", "html", "--to", "native", paths.url, "-o", str(paths.ast)])


def run_conversion(paths: PagePaths, codeblock_language: Optional[str] = None) -> None:
    env = dict(os.environ)
    env.pop(CODEBLOCK_LANGUAGE_ENV, None)
    if codeblock_language:
        env[CODEBLOCK_LANGUAGE_ENV] = codeblock_language
    cmd = [
        PANDOC_BIN,
        "--from",
        "html",
        "--to",
        MARKDOWN_WRITER,
        paths.url,
        "-o",
        str(paths.destination),
        "--filter",
        resolve_filter_command(),
    ]
    _run_pandoc(cmd, env=env)


def _is_suppressed_version_path(path: Path) -> bool:
    match = VERSION_FOLDER_RE.search(path.as_posix())
    return bool(match) and int(match.group(1)) < LINK_AUDIT_MIN_MAJOR_VERSION


def _html_links_to(text: str, target_re: re.Pattern) -> bool:
    try:
        from bs4 import BeautifulSoup  # type: ignore
    except Exception as exc:
        raise RuntimeError(f"beautifulsoup4 not available: {exc}") from exc

    soup = BeautifulSoup(text, "html.parser")
    return any(target_re.match(link["href"].strip()) for link in soup.find_all(href=True))


def find_referencing_pages(content_root: Path, page_name: str) -> List[Path]:
    """List site files whose links still point at ``<page_name>.php``.

    Every file's raw text is searched, so links echoed from PHP code or kept
    in include files are found too. Plain HTML files are additionally parsed,
    which catches unquoted or spaced-out ``href`` attributes.
    """
    target = rf"(?:[^'\"\s>]*/)?{re.escape(page_name)}\.php(?:#[^'\"\s>]*)?"
    raw_href_re = re.compile(rf"href[ \t]*=[ \t]*(['\"]){target}\1")
    target_re = re.compile(rf"^{target}$")
    matches: List[Path] = []
    for path in sorted(content_root.rglob("*")):
        if not path.is_file():
            continue
        relative = path.relative_to(content_root)
        if _is_suppressed_version_path(relative):
            continue
        data = path.read_bytes()
        if b"\0" in data:
            continue
        text = data.decode("utf-8", errors="replace")
        if raw_href_re.search(text) or (
            path.suffix.lower() in LINK_AUDIT_HTML_SUFFIXES and _html_links_to(text, target_re)
        ):
            matches.append(path)
    LOG.debug("Link audit for %s.php: %d match(es)", page_name, len(matches))
    return matches


def convert_page(location: str, layout: SiteLayout, options: ConversionOptions) -> ConversionResult:
    if options.ast and options.finalize:
        raise ConversionError(
            "--ast and --finalize are both set. AST mode is meant for diagnosing conversion issues, "
            "so the original page is kept. Aborting."
        )

    paths = layout.resolve(location)
    if not paths.source.exists():
        raise SourceNotFoundError(f"Original PHP/HTML source for the page ({paths.source}) does not exist!")

    stripped = strip_template(read_text_exact(paths.source))
    write_text_exact(paths.source, stripped.text)

    if paths.destination.exists():
        paths.destination.unlink()

    if options.ast:
        dump_ast(paths)

    run_conversion(paths, options.codeblock_language)

    converted = paths.destination.read_text(encoding="utf-8")
    final_text, title = build_markdown(converted, stripped.title, stripped.legacy_title)
    safe_write_text(paths.destination, final_text)
    LOG.info("Wrote %s", paths.destination)

    result = ConversionResult(paths=paths, title=title)
    if options.link_check:
        result.referencing_pages = find_referencing_pages(layout.content_root, paths.source.stem)

    if options.finalize:
        paths.source.unlink()
        result.deleted_source = True
    return result
