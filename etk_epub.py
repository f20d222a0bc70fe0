# etk_epub.py
from __future__ import annotations

import re
import sys
from pathlib import Path
from typing import Iterable, List, NamedTuple, Optional, Sequence, Tuple

import ebooklib  # type: ignore
from bs4 import BeautifulSoup  # type: ignore
from ebooklib import epub  # type: ignore

from etk_core import AssemblyError, ExtractionError, Unit, output_path
from etk_prompts import build_context


class BookMeta(NamedTuple):
    title: str
    language: str
    description: str
    creator: str


def is_chapter(href: str) -> bool:
    return "chapter" in (href or "").lower()


def safe_slug(s: str) -> str:
    s = re.sub(r"[^\w\-]+", "_", s)
    s = re.sub(r"_+", "_", s).strip("_")
    return s or "untitled"


# --- extraction ---------------------------------------------------------------

def open_book(path: Path) -> epub.EpubBook:
    try:
        return epub.read_epub(str(path), options={"ignore_ncx": True})
    except Exception as e:
        raise ExtractionError(f"failed to open EPUB file {path}: {e}") from e


def _first_meta(book: epub.EpubBook, name: str) -> str:
    try:
        values = book.get_metadata("DC", name)
    except Exception:
        values = []
    for value, _attrs in values or []:
        if value:
            return str(value).strip()
    return ""


def book_meta(book: epub.EpubBook) -> BookMeta:
    title = _first_meta(book, "title") or "Untitled"
    return BookMeta(
        title=title,
        language=_first_meta(book, "language") or "en",
        description=_first_meta(book, "description"),
        creator=_first_meta(book, "creator") or title,
    )


def iter_spine_documents(book: epub.EpubBook) -> Iterable[Tuple[str, epub.EpubItem]]:
    """Yield (href, item) for spine entries in reading order."""
    for entry in book.spine:
        idref = entry[0] if isinstance(entry, (tuple, list)) else entry
        item = book.get_item_with_id(idref)
        if item is None or item.get_type() != ebooklib.ITEM_DOCUMENT:
            continue
        yield item.get_name(), item


def read_chapters(book: epub.EpubBook, verbose: bool = False) -> List[Tuple[str, str]]:
    """
    First pass: materialise (identifier, content) for every chapter in spine
    order. Unreadable items are skipped with a warning.
    """
    chapters: List[Tuple[str, str]] = []
    for href, item in iter_spine_documents(book):
        if not is_chapter(href):
            if verbose:
                sys.stderr.write(f"[info] skipping non-chapter item {href}\n")
            continue
        try:
            content = item.get_content().decode("utf-8", errors="replace")
        except Exception as e:
            sys.stderr.write(f"[warn] Failed to load chapter content for {href}: {e}\n")
            continue
        chapters.append((href, content))
    return chapters


def build_units(chapters: Sequence[Tuple[str, str]], before: int, after: int) -> List[Unit]:
    """
    Second pass: derive each unit's context by lookups into the materialised
    sequence. The sequence itself is never modified.
    """
    contents = [c for _, c in chapters]
    return [
        Unit(identifier=href, content=content, ordinal=i, context=build_context(contents, i, before, after))
        for i, (href, content) in enumerate(chapters)
    ]


def pending_units(units: Sequence[Unit], directory: Path) -> List[Unit]:
    """Units without an output file in `directory` yet."""
    return [u for u in units if not output_path(directory, u.identifier).exists()]


def load_units(path: Path, directory: Path, before: int = 0, after: int = 0,
               verbose: bool = False, create_directory: bool = True) -> Tuple[epub.EpubBook, List[Unit], List[Unit]]:
    """Return (book, all units, units still to process)."""
    book = open_book(path)
    try:
        if create_directory:
            Path(directory).mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ExtractionError(f"failed to ensure directory exists: {e}") from e
    units = build_units(read_chapters(book, verbose=verbose), before, after)
    return book, units, pending_units(units, directory)


# --- assembly -----------------------------------------------------------------

def _section_title(text: str, fallback: str) -> str:
    try:
        soup = BeautifulSoup(text, "html.parser")
    except Exception:
        return fallback
    if soup.title and soup.title.get_text(strip=True):
        return soup.title.get_text(strip=True)
    for tag in ("h1", "h2", "h3"):
        h = soup.find(tag)
        if h and h.get_text(strip=True):
            return h.get_text(strip=True)
    return fallback


def _output_files(directory: Path, identifiers: Sequence[str]) -> List[str]:
    """Identifiers in spine order, then any other files in the directory, sorted."""
    known = set(identifiers)
    ordered = [i for i in identifiers if output_path(directory, i).is_file()]
    extras = sorted(
        p.relative_to(directory).as_posix()
        for p in Path(directory).rglob("*")
        if p.is_file() and not p.name.endswith(".part") and p.suffix.lower() != ".epub"
    )
    return ordered + [e for e in extras if e not in known]


def default_output(meta: BookMeta) -> Path:
    return Path(f"{safe_slug(meta.title)}_output.epub")


def assemble_book(meta: BookMeta, directory: Path, identifiers: Sequence[str],
                  dest: Optional[Path] = None, verbose: bool = False) -> Path:
    """Build a new EPUB from the per-unit output files and write it to `dest`."""
    directory = Path(directory)
    dest = Path(dest) if dest else default_output(meta)

    book = epub.EpubBook()
    book.set_identifier(safe_slug(meta.title) + "_output")
    book.set_title(meta.title + " (output)")
    book.set_language(meta.language)
    book.add_author(meta.creator)
    if meta.description:
        book.add_metadata("DC", "description", meta.description)

    sections = []
    try:
        names = _output_files(directory, identifiers)
    except OSError as e:
        raise AssemblyError(f"failed to load chapters from dir: {e}") from e
    for name in names:
        try:
            text = output_path(directory, name).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise AssemblyError(f"failed to read {name}: {e}") from e
        if not text.strip():
            sys.stderr.write(f"[warn] empty output file skipped: {name}\n")
            continue
        section = epub.EpubHtml(
            title=_section_title(text, Path(name).stem),
            file_name=name,
            lang=meta.language,
        )
        section.content = text.encode("utf-8")
        book.add_item(section)
        sections.append(section)

    if not sections:
        raise AssemblyError(f"no chapter outputs found in {directory}")

    book.toc = tuple(sections)
    book.add_item(epub.EpubNcx())
    book.add_item(epub.EpubNav())
    book.spine = ["nav"] + sections

    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        epub.write_epub(str(dest), book, {})
    except Exception as e:
        raise AssemblyError(f"failed to save output EPUB: {e}") from e
    if verbose:
        sys.stderr.write(f"[info] assembled {len(sections)} sections -> {dest}\n")
    return dest
