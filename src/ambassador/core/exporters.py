"""Roleplay exporters.

Renders a roleplay's message log to a downloadable document, as plain text
or as a PDF (via fpdf2). Names are resolved through an optional callback so the
same exporter serves the bot (which can ask the guild) and the HTTP API
(which can't).
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from fpdf import FPDF
from fpdf.enums import XPos, YPos

from ambassador.db.models import RoleplayMessageRow, RoleplayRow, UserRow
from ambassador.models.roleplay import ExportFormat

NameResolver = Callable[[int], str | None]

_FILE_EXTENSIONS: dict[str, str] = {"plaintext": "txt", "pdf": "pdf"}


@dataclass(frozen=True)
class ExportedRoleplay:
    title: str
    format: ExportFormat
    data: bytes

    @property
    def filename(self) -> str:
        safe = re.sub(r'[\\/:*?"<>|]+', "_", self.title).strip() or "roleplay"
        return f"{safe}.{_FILE_EXTENSIONS[self.format]}"


def _name_for(
    user: UserRow,
    messages: Sequence[RoleplayMessageRow],
    resolve_name: NameResolver | None,
) -> str:
    """Guild name if resolvable, then the nickname of their first logged message."""
    if resolve_name is not None:
        resolved = resolve_name(user.discord_id)
        if resolved:
            return resolved
    for message in messages:
        if message.author_id == user.id:
            return message.author_nickname
    return f"Unknown user ({user.discord_id})"


def _distinct_messages(messages: Sequence[RoleplayMessageRow]) -> list[RoleplayMessageRow]:
    """Messages by timestamp, dropping later repeats of the same contents."""
    ordered = sorted(messages, key=lambda m: (m.timestamp, m.discord_message_id))
    seen: set[str] = set()
    distinct = []
    for message in ordered:
        if message.contents in seen:
            continue
        seen.add(message.contents)
        distinct.append(message)
    return distinct


def export_plaintext(
    roleplay: RoleplayRow,
    messages: Sequence[RoleplayMessageRow],
    resolve_name: NameResolver | None = None,
) -> ExportedRoleplay:
    """Render a roleplay as a plain-text transcript.

    Messages are ordered by timestamp; later messages repeating earlier
    contents verbatim are dropped.
    """
    ordered = _distinct_messages(messages)

    lines = [
        f"Roleplay name: {roleplay.name}",
        f"Owner: {_name_for(roleplay.owner, ordered, resolve_name)}",
        "Participants:",
    ]
    lines.extend(_name_for(user, ordered, resolve_name) for user in roleplay.joined_users)
    lines.extend(["", ""])

    for message in ordered:
        lines.append(f"{message.author_nickname}: \n{message.contents}")
        lines.append("")

    text = "\n".join(lines) + "\n"
    return ExportedRoleplay(title=roleplay.name, format="plaintext", data=text.encode("utf-8"))


# --- PDF ---

PDF_FONT = "Helvetica"
PDF_TEXT_SIZE = 11
PDF_TITLE_SIZE = 48
PDF_LINE_HEIGHT = 6
PDF_PARAGRAPH_SPACING = 8
PDF_CODE_FILL = (211, 211, 211)


def _pdf_text(text: str) -> str:
    # The core PDF fonts only cover Latin-1.
    return text.encode("latin-1", "replace").decode("latin-1")


def _pdf_paragraph(pdf: FPDF, text: str, style: str = "", fill: bool = False) -> None:
    pdf.set_font(PDF_FONT, style=style, size=PDF_TEXT_SIZE)
    pdf.multi_cell(
        0, PDF_LINE_HEIGHT, _pdf_text(text), fill=fill, new_x=XPos.LMARGIN, new_y=YPos.NEXT
    )


def _pdf_message(pdf: FPDF, author: str, contents: str) -> None:
    """Author in italics, then the contents. Text between ``` fences is set as a code block."""
    _pdf_paragraph(pdf, f"{author} ", style="I")
    for index, part in enumerate(contents.split("```")):
        part = part.lstrip("\n")
        if not part.strip():
            continue
        if index % 2 == 1:
            pdf.ln(PDF_LINE_HEIGHT / 2)
            _pdf_paragraph(pdf, part, style="I", fill=True)
            pdf.ln(PDF_LINE_HEIGHT / 2)
        else:
            _pdf_paragraph(pdf, part)
    pdf.ln(PDF_PARAGRAPH_SPACING)


def export_pdf(
    roleplay: RoleplayRow,
    messages: Sequence[RoleplayMessageRow],
    resolve_name: NameResolver | None = None,
) -> ExportedRoleplay:
    """Render a roleplay as a PDF: a title page with the participants, then the log."""
    ordered = _distinct_messages(messages)

    pdf = FPDF()
    pdf.set_title(roleplay.name)
    pdf.set_author(_name_for(roleplay.owner, ordered, resolve_name))
    pdf.set_creator("Ambassador")
    pdf.set_fill_color(*PDF_CODE_FILL)

    pdf.add_page()
    pdf.set_font(PDF_FONT, style="B", size=PDF_TITLE_SIZE)
    pdf.multi_cell(0, 20, _pdf_text(roleplay.name), new_x=XPos.LMARGIN, new_y=YPos.NEXT)
    pdf.ln(PDF_PARAGRAPH_SPACING)
    _pdf_paragraph(pdf, "Participants:")
    for user in roleplay.joined_users:
        _pdf_paragraph(pdf, _name_for(user, ordered, resolve_name), style="I")

    pdf.add_page()
    for message in ordered:
        _pdf_message(pdf, message.author_nickname, message.contents)

    return ExportedRoleplay(title=roleplay.name, format="pdf", data=bytes(pdf.output()))


def export_roleplay(
    roleplay: RoleplayRow,
    messages: Sequence[RoleplayMessageRow],
    export_format: ExportFormat,
    resolve_name: NameResolver | None = None,
) -> ExportedRoleplay:
    if export_format == "pdf":
        return export_pdf(roleplay, messages, resolve_name)
    return export_plaintext(roleplay, messages, resolve_name)
