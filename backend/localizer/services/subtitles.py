import io
from typing import Sequence

from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas

from localizer.schemas.segments import TimedSegment


def format_timestamp(seconds: float) -> str:
    """Seconds -> SRT ``HH:MM:SS,mmm``."""
    total_ms = int(round(max(seconds, 0.0) * 1000))
    h, rem = divmod(total_ms, 3_600_000)
    m, rem = divmod(rem, 60_000)
    s, ms = divmod(rem, 1000)
    return f"{h:02}:{m:02}:{s:02},{ms:03}"


def render_srt(segments: Sequence[TimedSegment]) -> str:
    lines = []
    ordered = sorted(segments, key=lambda seg: seg.start_time)
    for idx, seg in enumerate(ordered, start=1):
        lines.append(str(idx))
        lines.append(f"{format_timestamp(seg.start_time)} --> {format_timestamp(seg.end_time)}")
        lines.append(seg.text.strip())
        lines.append("")
    return "\n".join(lines)


def render_txt(segments: Sequence[TimedSegment]) -> str:
    return "\n".join(seg.text.strip() for seg in sorted(segments, key=lambda seg: seg.start_time)) + "\n"


def render_pdf(segments: Sequence[TimedSegment], title: str) -> bytes:
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=letter)
    width, height = letter

    def new_page():
        text_obj = c.beginText(40, height - 50)
        text_obj.setFont("Helvetica", 10)
        return text_obj

    text_obj = new_page()
    text_obj.setFont("Helvetica-Bold", 12)
    text_obj.textLine(title[:90])
    text_obj.setFont("Helvetica", 10)
    text_obj.textLine("")
    for seg in sorted(segments, key=lambda seg: seg.start_time):
        stamp = f"[{format_timestamp(seg.start_time)[:8]}] "
        line = stamp + seg.text.strip()
        # crude wrap, Helvetica 10pt fits roughly 100 chars on letter width
        while line:
            text_obj.textLine(line[:100])
            line = line[100:]
            if text_obj.getY() < 50:
                c.drawText(text_obj)
                c.showPage()
                text_obj = new_page()
    c.drawText(text_obj)
    c.save()
    return buf.getvalue()
