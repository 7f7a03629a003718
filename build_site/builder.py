"""
Static site generator for a flat folder of markdown wiki pages.

Features:
- Converts every .md file in the pages directory to .html in the output directory
- Rewrites [text](page.md) links so they point at the generated page.html
- Collects a "Tags: a, b, c" line per page and writes one tag-<tag>.html per tag
- Writes explorer.html listing every source page
- Copies static assets (CSS/JS) verbatim; templates are Jinja2 with autoescaping

Usage:
  build-site
  python -m build_site --pages ./pages --output ./output --clean

Notes:
- Requires "markdown" and "Jinja2": pip install markdown Jinja2
- The bundled templates/ and static/ folders ship inside this package
"""

from __future__ import annotations

import argparse
import hashlib
import logging
import os
import re
import shutil
import stat
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence
from urllib.parse import quote

# -- markdown conversion and templating --
try:
    import markdown  # type: ignore
    from jinja2 import Environment, FileSystemLoader, select_autoescape
    from markupsafe import Markup
except ImportError as exc:  # minimal helpful error
    raise SystemExit(
        "Missing dependency. Install with 'pip install markdown Jinja2'"
    ) from exc


logger = logging.getLogger(__name__)

PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_TEMPLATES_DIR = PACKAGE_DIR / "templates"
DEFAULT_STATIC_DIR = PACKAGE_DIR / "static"

PAGE_TEMPLATE = "page-template.html"
EXPLORER_TEMPLATE = "explorer-template.html"
TAG_TEMPLATE = "tag-template.html"
EXPLORER_FILENAME = "explorer.html"

WIKI_LINK_RE = re.compile(r"\[([^\]]+)\]\(([^)]+)\.md\)")
# "Tags:" at the start of a line or after the end of a sentence
TAGS_LINE_RE = re.compile(r"(?:^[ \t]*|[.!?][ \t]+)tags:[ \t]*(.*)$", re.IGNORECASE | re.MULTILINE)
TAG_SPLIT_RE = re.compile(r"[,\s]+")
FENCED_CODE_RE = re.compile(r"```[\s\S]*?```")


# -- errors --
class SiteBuildError(Exception):
    """Base class for every failure that aborts a build."""


class SourceDirectoryNotFound(SiteBuildError):
    pass


class PageReadError(SiteBuildError):
    pass


class PageWriteError(SiteBuildError):
    pass


# -- data structures --
@dataclass(frozen=True)
class SiteConfig:
    pages_dir: Path
    output_dir: Path
    templates_dir: Path = DEFAULT_TEMPLATES_DIR
    static_dir: Optional[Path] = DEFAULT_STATIC_DIR
    clean: bool = False


class SourcePage:
    """A markdown source file, read once, with its derived tags and rewritten text."""

    def __init__(self, filename: str, content: str):
        self.filename = filename
        self.name = Path(filename).stem
        self.content = content
        self.tags: List[str] = extract_tags(content)
        self.rewritten: str = rewrite_wiki_links(content)


class RenderedPage:
    """HTML for one output file."""

    def __init__(self, filename: str, html_text: str):
        self.filename = filename
        self.html_text = html_text


TagIndex = Dict[str, List[str]]


# -- helpers: scanning --
def list_source_files(pages_dir: Path) -> List[str]:
    """Return the .md regular files in pages_dir, in directory-listing order."""
    if not pages_dir.is_dir():
        raise SourceDirectoryNotFound(f"Pages directory not found: {pages_dir}")
    try:
        with os.scandir(pages_dir) as entries:
            return [
                entry.name
                for entry in entries
                if entry.is_file() and Path(entry.name).suffix == ".md"
            ]
    except FileNotFoundError as exc:
        raise SourceDirectoryNotFound(f"Pages directory not found: {pages_dir}") from exc
    except OSError as exc:
        raise PageReadError(f"Cannot list pages directory {pages_dir}: {exc}") from exc


def load_source_page(pages_dir: Path, filename: str) -> SourcePage:
    path = pages_dir / filename
    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise PageReadError(f"Cannot read {path}: {exc}") from exc
    return SourcePage(filename, content)


# -- helpers: text transforms --
def rewrite_wiki_links(content: str) -> str:
    """Point [text](page.md) links at page.html, leaving the link text alone."""
    return WIKI_LINK_RE.sub(lambda m: f"[{m.group(1)}]({m.group(2)}.html)", content)


def extract_tags(content: str) -> List[str]:
    """Return the tokens of the first "Tags:" line, or [] when there is none.

    Matching is case-insensitive; tokens are separated by commas and/or whitespace.
    "Tags:" counts only at the start of a line or after ". ", "! " or "? ", so
    "meta-tags:" is ignored, and so is anything inside ``` fenced code.
    """
    match = TAGS_LINE_RE.search(FENCED_CODE_RE.sub("", content))
    if not match:
        return []
    return [token for token in TAG_SPLIT_RE.split(match.group(1).strip()) if token]


def add_page_to_tag_index(tag_index: TagIndex, page_name: str, tags: Sequence[str]) -> TagIndex:
    for tag in tags:
        pages = tag_index.setdefault(tag, [])
        if page_name not in pages:
            pages.append(page_name)
    return tag_index


# -- helpers: tag filenames --
_UNSAFE_TAG_CHARS_RE = re.compile(r'[\x00-\x1F\x7F<>:"/\\|?*]+')
# device names a Windows checkout of the output folder cannot hold
_RESERVED_STEM_RE = re.compile(r"(con|prn|aux|nul|com[1-9]|lpt[1-9])", re.IGNORECASE)


def safe_tag_stem(tag: str, max_len: int = 80) -> str:
    """Return the tag itself when it can be used as a file stem, else a cleaned copy.

    Tags come straight from page text, so "../x" or "a/b" must never reach a
    path. A cleaned stem ends with a hash of the original tag, which keeps
    "a/b" and "a\\b" on separate pages.
    """
    if (
        tag
        and len(tag) <= max_len
        and not _UNSAFE_TAG_CHARS_RE.search(tag)
        and tag.strip(" .") == tag
        and not _RESERVED_STEM_RE.fullmatch(tag)
    ):
        return tag

    digest = hashlib.md5(tag.encode("utf-8")).hexdigest()[:6]
    cleaned = _UNSAFE_TAG_CHARS_RE.sub("-", tag).strip(" .")
    return f"{cleaned[: max_len - len(digest) - 1]}-{digest}"


def tag_filename(tag: str) -> str:
    return f"tag-{safe_tag_stem(tag)}.html"


def tag_href(tag: str) -> str:
    return quote(tag_filename(tag))


def page_href(page_name: str) -> str:
    return quote(f"{page_name}.html")


# -- helpers: output --
def clean_output_dir(output_dir: Path) -> None:
    """Remove the output directory so the next build starts from scratch."""
    if not output_dir.exists():
        return

    def _handle_remove_readonly(func, path, exc_info):  # clear read-only then retry
        os.chmod(path, stat.S_IWRITE)
        func(path)

    try:
        if sys.version_info >= (3, 12):
            shutil.rmtree(output_dir, onexc=_handle_remove_readonly)
        else:
            shutil.rmtree(output_dir, onerror=_handle_remove_readonly)
    except OSError as exc:
        raise PageWriteError(f"Cannot clean output directory {output_dir}: {exc}") from exc


def ensure_output_dir(output_dir: Path) -> None:
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise PageWriteError(f"Cannot create output directory {output_dir}: {exc}") from exc


def copy_static_assets(static_dir: Optional[Path], output_dir: Path) -> int:
    """Copy CSS/JS and other files as-is, preserving structure. Returns the file count."""
    if static_dir is None or not static_dir.is_dir():
        return 0
    copied = 0
    for src in sorted(static_dir.rglob("*")):
        if src.is_dir() or src.name.startswith("."):
            continue
        dst = output_dir / src.relative_to(static_dir)
        try:
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dst)
        except OSError as exc:
            raise PageWriteError(f"Cannot copy asset {src} to {dst}: {exc}") from exc
        copied += 1
    return copied


def write_output(output_dir: Path, page: RenderedPage) -> Path:
    out_path = output_dir / page.filename
    try:
        out_path.write_text(page.html_text, encoding="utf-8")
    except OSError as exc:
        raise PageWriteError(f"Cannot write {out_path}: {exc}") from exc
    return out_path


# -- helpers: HTML generation --
def create_template_env(templates_dir: Path) -> Environment:
    env = Environment(
        loader=FileSystemLoader(str(templates_dir)),
        autoescape=select_autoescape(["html"]),
        keep_trailing_newline=True,
    )
    env.filters["tag_href"] = tag_href
    return env


def convert_markdown_to_html(md_text: str) -> str:
    """Convert markdown to HTML; raw HTML in the source is passed through."""
    return markdown.markdown(md_text, extensions=["extra", "fenced_code", "tables"])


def render_page(env: Environment, page_name: str, content: str, tags: Sequence[str]) -> RenderedPage:
    """Render already-rewritten markdown through the shared page template."""
    template = env.get_template(PAGE_TEMPLATE)
    html_text = template.render(
        content=Markup(convert_markdown_to_html(content)),
        title=page_name,
        tags=list(tags),
    )
    return RenderedPage(f"{page_name}.html", html_text)


def write_explorer_page(env: Environment, files: Sequence[str], output_dir: Path) -> Path:
    entries = [{"href": page_href(Path(f).stem), "label": f} for f in files]
    html_text = env.get_template(EXPLORER_TEMPLATE).render(title="Explorer", entries=entries)
    return write_output(output_dir, RenderedPage(EXPLORER_FILENAME, html_text))


def write_tag_pages(env: Environment, tag_index: TagIndex, output_dir: Path) -> List[Path]:
    template = env.get_template(TAG_TEMPLATE)
    written: List[Path] = []
    for tag, page_names in tag_index.items():
        if safe_tag_stem(tag) != tag:
            logger.warning("Tag %r is not a safe filename, writing it as %s", tag, tag_filename(tag))
        entries = [{"href": page_href(name), "label": name} for name in page_names]
        html_text = template.render(title=tag, entries=entries)
        written.append(write_output(output_dir, RenderedPage(tag_filename(tag), html_text)))
    return written


# -- build --
def build_site(config: SiteConfig) -> TagIndex:
    """Render every page, then the explorer and tag pages. Returns the tag index.

    Any read or write failure aborts the run, so a page listed on a tag page
    always has its own HTML file.
    """
    if not config.pages_dir.is_dir():
        raise SourceDirectoryNotFound(f"Pages directory not found: {config.pages_dir}")

    if config.clean:
        clean_output_dir(config.output_dir)
    ensure_output_dir(config.output_dir)
    assets = copy_static_assets(config.static_dir, config.output_dir)
    if assets:
        logger.debug("Copied %d static asset(s)", assets)

    env = create_template_env(config.templates_dir)
    files = list_source_files(config.pages_dir)

    tag_index: TagIndex = {}
    for filename in files:
        page = load_source_page(config.pages_dir, filename)
        add_page_to_tag_index(tag_index, page.name, page.tags)
        out_path = write_output(config.output_dir, render_page(env, page.name, page.rewritten, page.tags))
        logger.debug("Rendered %s -> %s (tags: %s)", filename, out_path.name, ", ".join(page.tags) or "-")

    write_explorer_page(env, files, config.output_dir)

    page_outputs = {f"{Path(f).stem}.html" for f in files}
    for tag in tag_index:
        if tag_filename(tag) in page_outputs:
            logger.warning("Tag page %s overwrites the page of the same name", tag_filename(tag))
    write_tag_pages(env, tag_index, config.output_dir)

    logger.info("Built %d page(s) and %d tag page(s) in %s", len(files), len(tag_index), config.output_dir)
    return tag_index


# -- CLI --
def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate a static site from a folder of markdown pages.")
    parser.add_argument("--pages", type=Path, default=Path("pages"), help="Folder of .md source pages (default: ./pages)")
    parser.add_argument("--output", type=Path, default=Path("output"), help="Output folder for generated site (default: ./output)")
    parser.add_argument(
        "--templates",
        type=Path,
        default=DEFAULT_TEMPLATES_DIR,
        help="Folder holding page-template.html, explorer-template.html and tag-template.html",
    )
    parser.add_argument("--static", type=Path, default=DEFAULT_STATIC_DIR, help="Folder of assets copied as-is")
    parser.add_argument("--clean", action="store_true", help="Delete the output folder before building")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every rendered page")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(message)s",
    )
    config = SiteConfig(
        pages_dir=args.pages.expanduser().resolve(),
        output_dir=args.output.expanduser().resolve(),
        templates_dir=args.templates.expanduser().resolve(),
        static_dir=args.static.expanduser().resolve(),
        clean=args.clean,
    )

    try:
        build_site(config)
    except SiteBuildError as exc:
        raise SystemExit(f"Build failed: {exc}") from exc

    print(f"Site generated at: {config.output_dir}")
    return 0
