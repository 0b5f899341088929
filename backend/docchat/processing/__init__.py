"""
Document Processing Package

Turns a stored artifact into assembled, page-delimited text:

    MediaType → PageRasterizer → RecognitionPool → TextAssembler

The DocumentProcessor in docchat.processing.orchestrator drives these
stages for one document and owns the status transitions; import it from
that module directly.
"""

from docchat.processing.assembler import EMPTY_DOCUMENT_TEXT, AssembledText, TextAssembler
from docchat.processing.media import MediaType, PageStrategy
from docchat.processing.rasterizer import PageRasterizer, PageSequence, PageUnit
from docchat.processing.recognition import (
    ImagePreprocessor,
    PageResult,
    RecognitionPool,
    TesseractRecognizer,
)

__all__ = [
    "AssembledText",
    "EMPTY_DOCUMENT_TEXT",
    "ImagePreprocessor",
    "MediaType",
    "PageRasterizer",
    "PageResult",
    "PageSequence",
    "PageStrategy",
    "PageUnit",
    "RecognitionPool",
    "TesseractRecognizer",
    "TextAssembler",
]
