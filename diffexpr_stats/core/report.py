#!/usr/bin/env python
# coding: utf-8

"""
Vignette Rendering
PDF document builder for narrated analyses and session metadata
"""

import os
import platform
import re
import sys
from collections import OrderedDict
from datetime import datetime
from importlib import metadata
from typing import Any, Optional, Sequence

import pandas as pd
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.lib.utils import ImageReader
from reportlab.platypus import (
    Image,
    ListFlowable,
    ListItem,
    Paragraph,
    Preformatted,
    SimpleDocTemplate,
    Spacer,
)

STACK_PACKAGES = (
    "numpy",
    "pandas",
    "scipy",
    "statsmodels",
    "scikit-learn",
    "matplotlib",
    "reportlab",
    "requests",
)


def session_info(packages: Sequence[str] = STACK_PACKAGES) -> "OrderedDict[str, Any]":
    """
    Describe the running interpreter and installed analysis packages.

    Packages that are not installed map to ``None``.
    """
    info: "OrderedDict[str, Any]" = OrderedDict()
    info["python"] = sys.version.split()[0]
    info["implementation"] = platform.python_implementation()
    info["platform"] = platform.platform()
    info["date"] = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

    versions = OrderedDict()
    for name in packages:
        try:
            versions[name] = metadata.version(name)
        except metadata.PackageNotFoundError:
            versions[name] = None
    info["packages"] = versions
    return info


def format_session_info(info: "OrderedDict[str, Any]") -> str:
    """Render session_info() output as aligned plain text."""
    lines = ["Session info " + "-" * 50]
    for key in ("python", "implementation", "platform", "date"):
        lines.append(f" {key:<16}{info[key]}")
    lines.append("")
    lines.append("Packages " + "-" * 54)
    for name, version in info["packages"].items():
        lines.append(f" {name:<16}{version or 'not installed'}")
    return "\n".join(lines)


class PDFLogger:
    """PDF logger for narrated analyses with code chunks and figures."""

    def __init__(
        self,
        path: str = "vignette.pdf",
        echo: bool = True,
        assets_dir: Optional[str] = None,
        dpi: int = 150,
    ):
        self.path = path
        self.echo = echo
        self.dpi = dpi
        self.assets_dir = assets_dir or os.path.join(
            os.path.dirname(os.path.abspath(path)), "assets"
        )
        self.doc = SimpleDocTemplate(path, pagesize=A4)
        self.styles = getSampleStyleSheet()

        for name, size, before in (("H1", 16, 25), ("H2", 14, 20), ("H3", 12, 6)):
            self.styles.add(
                ParagraphStyle(
                    name,
                    parent=self.styles["Normal"],
                    fontName="Helvetica-Bold",
                    fontSize=size,
                    leading=size + 2,
                    spaceBefore=before,
                    spaceAfter=6,
                )
            )
        self.styles.add(
            ParagraphStyle(
                "CodeChunk",
                parent=self.styles["Normal"],
                fontName="Courier",
                fontSize=8.5,
                leading=10.5,
                backColor=colors.HexColor("#F4F4F4"),
                borderPadding=4,
            )
        )
        self.styles.add(
            ParagraphStyle(
                "Output",
                parent=self.styles["Normal"],
                fontName="Courier",
                fontSize=8.5,
                leading=10.5,
            )
        )

        self.story: list = []
        self.current_list = None
        self.n_figures = 0

    def _format_md(self, text: str) -> str:
        """Inline markdown: bold, italics, code."""
        text = text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
        text = re.sub(r"\*\*(.*?)\*\*", r"<b>\1</b>", text)
        text = re.sub(r"\*([^*]+)\*", r"<i>\1</i>", text)
        text = re.sub(r"`(.*?)`", r"<font name='Courier'>\1</font>", text)
        return text

    def _echo(self, text: str):
        if self.echo:
            print(text)

    def _flush_list(self):
        self.current_list = None

    def log_text(self, text: str):
        """Add one markdown-ish line: header, bullet or paragraph."""
        text = text.strip()
        if not text:
            return
        self._echo(text)

        headers = (("### ", "H3"), ("## ", "H2"), ("# ", "H1"))
        for prefix, style in headers:
            if text.startswith(prefix):
                self._flush_list()
                self.story.append(
                    Paragraph(self._format_md(text[len(prefix):]), self.styles[style])
                )
                return

        if text.startswith("- "):
            item = ListItem(
                Paragraph(self._format_md(text[2:].strip()), self.styles["Normal"])
            )
            if self.current_list is None:
                self.current_list = ListFlowable(
                    [item],
                    bulletType="bullet",
                    leftIndent=18,
                    bulletFontSize=10,
                    start=None,
                    spaceBefore=0,
                    spaceAfter=12,
                )
                self.story.append(self.current_list)
            else:
                self.current_list._flowables.append(item)
            return

        self._flush_list()
        self.story.append(Paragraph(self._format_md(text), self.styles["Normal"]))
        self.story.append(Spacer(1, 0.08 * inch))

    def log_paragraphs(self, text: str):
        """Add a block of prose; blank lines separate paragraphs."""
        for block in re.split(r"\n\s*\n", text.strip()):
            lines = [line.strip() for line in block.splitlines()]
            if all(line.startswith(("- ", "#")) for line in lines if line):
                for line in lines:
                    self.log_text(line)
            else:
                self.log_text(" ".join(lines))

    def log_code(self, code: str):
        """Add a code chunk as it would appear in the rendered vignette."""
        self._flush_list()
        code = code.strip("\n")
        self._echo(code)
        self.story.append(Preformatted(code, self.styles["CodeChunk"]))
        self.story.append(Spacer(1, 0.12 * inch))

    def log_output(self, text: str):
        """Add printed output of a chunk."""
        self._flush_list()
        text = str(text).rstrip()
        self._echo(text)
        prefixed = "\n".join(f"## {line}" for line in text.splitlines())
        self.story.append(Preformatted(prefixed, self.styles["Output"]))
        self.story.append(Spacer(1, 0.12 * inch))

    def log_dataframe(
        self, df: pd.DataFrame, title: Optional[str] = None, max_rows: int = 6
    ):
        """Add a pandas DataFrame as printed output, truncated to max_rows."""
        self._flush_list()
        if title:
            self.story.append(Paragraph(f"<b>{title}</b>", self.styles["Normal"]))
            self.story.append(Spacer(1, 0.05 * inch))

        with pd.option_context("display.width", 110, "display.max_columns", 12):
            table_text = df.head(max_rows).to_string(float_format=lambda v: f"{v:.4g}")
        if len(df) > max_rows:
            table_text += f"\n... ({len(df) - max_rows} more rows)"

        self.log_output(table_text)

    def log_figure(self, fig, name: str, caption: Optional[str] = None,
                   width: float = 4.5 * inch):
        """Save a matplotlib figure into the assets dir and embed it."""
        import matplotlib.pyplot as plt

        os.makedirs(self.assets_dir, exist_ok=True)
        self.n_figures += 1
        path = os.path.join(self.assets_dir, f"figure_{self.n_figures}_{name}.png")
        fig.savefig(path, dpi=self.dpi, bbox_inches="tight")
        plt.close(fig)

        self.log_image(path, title=f"Figure {self.n_figures}", caption=caption,
                       width=width)
        return path

    def log_image(
        self,
        path: str,
        title: Optional[str] = None,
        caption: Optional[str] = None,
        width: float = 4.5 * inch,
    ):
        """Add an image with auto-scaling."""
        self._flush_list()
        self._echo(f"[Image: {path}] {caption or ''}")
        if not os.path.exists(path):
            self.log_text(f"[Missing image: {path}]")
            return

        iw, ih = ImageReader(path).getSize()
        aspect = ih / float(iw)
        height = width * aspect

        max_height = 8 * inch
        if height > max_height:
            height = max_height
            width = height / aspect

        self.story.append(Image(path, width=width, height=height))
        if caption or title:
            caption_text = f"<b>{title}</b>: {caption}" if title else caption
            self.story.append(Paragraph(caption_text, self.styles["Normal"]))
        self.story.append(Spacer(1, 0.2 * inch))

    def log_session_info(self, packages: Sequence[str] = STACK_PACKAGES):
        """Add session metadata."""
        self.log_code("session_info()")
        self.log_output(format_session_info(session_info(packages)))

    def save(self):
        """Build the PDF."""
        try:
            self.doc.build(self.story)
        except (OSError, ValueError) as e:
            self._echo(f"! PDF build failed: {e}")
            return False
        self._echo(f"✔ PDF saved to {self.path}")
        return True
