from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple
import os
from xml.sax.saxutils import escape

from reportlab.lib.pagesizes import A4
from reportlab.lib import colors
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import mm
from reportlab.platypus import (
    SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle
)
from reportlab.platypus.flowables import Flowable
from reportlab.pdfgen.canvas import Canvas

from boleto import format_linha, only_digits

LOGO_PATH = os.path.join("static", "logo.png")

BAR_HEIGHT = 40
TEST_BANNER = "BOLETO DE TESTE - HOMOLOGAÇÃO"


def _styles():
    base = getSampleStyleSheet()
    return {
        "title": ParagraphStyle("title", parent=base["Heading1"], fontSize=16, leading=20, spaceAfter=8),
        "banner": ParagraphStyle("banner", parent=base["Heading2"], fontSize=13, leading=16, textColor=colors.red),
        "label": ParagraphStyle("label", parent=base["Normal"], fontSize=9, leading=12, textColor=colors.grey),
        "value": ParagraphStyle("value", parent=base["Normal"], fontSize=10, leading=12),
        "value_bold": ParagraphStyle("value_bold", parent=base["Normal"], fontSize=10, leading=12, fontName="Helvetica-Bold"),
        "linha": ParagraphStyle("linha", parent=base["Heading3"], fontSize=12, leading=14, spaceBefore=6),
    }


def format_brl(cents: int) -> str:
    try:
        v = int(cents) / 100
        return "R$ " + f"{v:,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")
    except Exception:
        return "R$ 0,00"


def _fmt_date(d) -> str:
    if isinstance(d, datetime):
        d = d.date()
    if isinstance(d, date):
        return d.strftime("%d/%m/%Y")
    return str(d or "-")


def bar_pattern(barcode: str) -> List[Tuple[int, int]]:
    """
    Padrão ilustrativo (não é um código de barras certificado):
    cada dígito ocupa 1 + (d % 3) unidades e só os índices pares viram barra.
    Retorna [(x, largura)] das barras desenhadas.
    """
    bars = []
    x = 0
    for i, ch in enumerate(only_digits(barcode)):
        w = 1 + (int(ch) % 3)
        if i % 2 == 0:
            bars.append((x, w))
        x += w
    return bars


class BarPattern(Flowable):
    def __init__(self, barcode: str, height: float = BAR_HEIGHT):
        super().__init__()
        self.bars = bar_pattern(barcode)
        self.bar_height = height
        self.width = (self.bars[-1][0] + self.bars[-1][1]) if self.bars else 0
        self.height = height

    def wrap(self, availWidth, availHeight):
        return self.width, self.height

    def draw(self):
        self.canv.setFillColor(colors.black)
        for x, w in self.bars:
            self.canv.rect(x, 0, w, self.bar_height, stroke=0, fill=1)


def document_fields(
    *,
    beneficiary_name: str,
    beneficiary_document: str,
    bank_code: str,
    bank_name: str,
    agency: str,
    account: str,
    due_date,
    amount_cents: int,
    linha_digitavel: str,
    instructions: str = "",
    order_nsu: str = "",
    customer_name: str = "",
) -> Dict[str, Any]:
    """Campos estruturados do documento, na ordem em que aparecem no PDF."""
    return {
        "beneficiary": f"{beneficiary_name} ({beneficiary_document})",
        "bank": f"{bank_name} ({bank_code})",
        "agency": agency,
        "account": account,
        "order_nsu": order_nsu,
        "payer": customer_name,
        "due_date": _fmt_date(due_date),
        "amount": format_brl(amount_cents),
        "linha_digitavel": format_linha(linha_digitavel),
        "instructions": instructions or "",
    }


def _footer(canvas: Canvas, doc):
    w, h = A4
    y = 12 * mm
    canvas.setStrokeColor(colors.lightgrey)
    canvas.setLineWidth(0.5)
    canvas.line(15 * mm, y + 6 * mm, w - 15 * mm, y + 6 * mm)
    if os.path.exists(LOGO_PATH):
        try:
            canvas.drawImage(LOGO_PATH, 15 * mm, y, width=20 * mm, height=8 * mm, preserveAspectRatio=True, mask='auto')
        except Exception:
            pass
    canvas.setFont("Helvetica", 8)
    ts = datetime.now().strftime("%d/%m/%Y %H:%M:%S")
    canvas.drawRightString(w - 15 * mm, y + 2 * mm, f"Gerado em {ts}  •  Documento sem registro bancário")


def _fields_table(fields: Dict[str, Any]) -> Table:
    st = _styles()
    labels = [
        ("Beneficiário", "beneficiary"),
        ("Banco", "bank"),
        ("Agência", "agency"),
        ("Conta", "account"),
        ("Pedido", "order_nsu"),
        ("Pagador", "payer"),
        ("Vencimento", "due_date"),
        ("Valor", "amount"),
    ]
    rows = []
    for i in range(0, len(labels), 2):
        row = []
        for label, key in labels[i:i + 2]:
            style = st["value_bold"] if key in ("amount", "due_date") else st["value"]
            row += [Paragraph(label, st["label"]), Paragraph(escape(str(fields.get(key) or "-")), style)]
        rows.append(row)

    table = Table(rows, colWidths=[24*mm, 62*mm, 24*mm, 62*mm])
    table.setStyle(TableStyle([
        ("FONT", (0, 0), (-1, -1), "Helvetica", 9),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
        ("GRID", (0, 0), (-1, -1), 0.25, colors.lightgrey),
        ("LEFTPADDING", (0, 0), (-1, -1), 4),
        ("RIGHTPADDING", (0, 0), (-1, -1), 4),
        ("TOPPADDING", (0, 0), (-1, -1), 3),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 3),
    ]))
    return table


def gerar_pdf_boleto(fields: Dict[str, Any], barcode: str, test_banner: Optional[str] = None) -> bytes:
    from io import BytesIO
    buff = BytesIO()

    doc = SimpleDocTemplate(
        buff,
        pagesize=A4,
        leftMargin=15*mm,
        rightMargin=15*mm,
        topMargin=18*mm,
        bottomMargin=18*mm,
        title=f"Boleto {fields.get('order_nsu') or ''}".strip(),
    )

    st = _styles()
    story = [Paragraph("Boleto Bancário", st["title"])]
    if test_banner:
        story.append(Paragraph(test_banner, st["banner"]))
    story.append(Spacer(1, 4*mm))
    story.append(_fields_table(fields))
    story.append(Spacer(1, 5*mm))

    if fields.get("instructions"):
        story.append(Paragraph("Instruções", st["label"]))
        story.append(Paragraph(escape(str(fields["instructions"])), st["value"]))
        story.append(Spacer(1, 4*mm))

    linha = escape(str(fields.get("linha_digitavel") or ""))
    story.append(Paragraph(f"Linha digitável: <b>{linha}</b>", st["linha"]))
    story.append(Spacer(1, 4*mm))
    story.append(BarPattern(barcode))

    doc.build(story, onFirstPage=_footer, onLaterPages=_footer)
    pdf = buff.getvalue()
    buff.close()
    return pdf
