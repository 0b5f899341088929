"""
Text Assembler — joins per-page results into the document's text.

Layout:
  single page   the page text as-is
  multi page    "--- Page N ---" marker + text per page, blank-line separated,
                in page order regardless of completion order

A failed page is rendered as "[Page N: text extraction failed: <reason>]"
so the reader can see exactly which pages are missing. If no page produced
any text the result is EMPTY_DOCUMENT_TEXT.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from docchat.core.errors import InternalError
from docchat.processing.recognition import PageResult

EMPTY_DOCUMENT_TEXT = "No text could be extracted from the document."


class IncompleteAssemblyError(InternalError):
    """Asked to assemble before every page reported."""


@dataclass(frozen=True)
class AssembledText:
    text:            str
    page_count:      int
    failed_pages:    list[int] = field(default_factory=list)   # 1-based page numbers
    used_ocr:        bool      = False

    @property
    def succeeded_pages(self) -> int:
        return self.page_count - len(self.failed_pages)

    @property
    def all_failed(self) -> bool:
        return self.page_count > 0 and len(self.failed_pages) == self.page_count

    @property
    def is_empty(self) -> bool:
        return self.text == EMPTY_DOCUMENT_TEXT


def failure_marker(page_number: int, reason: str | None) -> str:
    return f"[Page {page_number}: text extraction failed: {reason or 'unknown error'}]"


class TextAssembler:

    def assemble(self, results: dict[int, PageResult], page_count: int) -> AssembledText:
        missing = [i for i in range(page_count) if i not in results]
        if page_count < 1 or missing:
            raise IncompleteAssemblyError(
                f"Cannot assemble {page_count} page(s); missing indexes {missing[:10]}"
            )

        ordered = [results[i] for i in range(page_count)]
        failed  = [r.index + 1 for r in ordered if not r.ok]
        has_text = any(r.ok and r.text and r.text.strip() for r in ordered)

        bodies = [
            (r.text or "").strip() if r.ok else failure_marker(r.index + 1, r.error)
            for r in ordered
        ]

        if not has_text:
            text = EMPTY_DOCUMENT_TEXT
        elif page_count == 1:
            text = bodies[0]
        else:
            text = "\n\n".join(
                f"--- Page {i + 1} ---\n\n{body}" for i, body in enumerate(bodies)
            )

        return AssembledText(
            text=text,
            page_count=page_count,
            failed_pages=failed,
            used_ocr=any(r.extraction_method == "ocr" for r in ordered),
        )
