from __future__ import annotations

'''PDF reimbursement report for a single project.

The document has two sections drawn directly on a reportlab canvas:

1. the claim itself: title, project metadata, a paginated expense table with
   a totals row, the total in Thai words, the certification sentence and the
   signature lines (claimant, plus approver when the project has one);
2. a receipt appendix with four expense cards per page, each embedding the
   uploaded receipt image where possible.

Layout is expressed top-down in points from the top edge of an A4 page and
converted to reportlab's bottom-up coordinates only when drawing.
'''

import logging
import os
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo
from decimal import ROUND_HALF_UP, Decimal
from functools import lru_cache
from io import BytesIO
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfgen import canvas

from records import Expense, Project, User, resolve_receipt_path

logger = logging.getLogger(__name__)

FONT_DIR = Path(os.getenv('REPORT_FONT_DIR') or Path(__file__).resolve().parent / 'assets' / 'fonts')
FONT_REGULAR_PATH = FONT_DIR / 'THSarabunNew.ttf'
FONT_BOLD_PATH = FONT_DIR / 'THSarabunNew Bold.ttf'
REPORT_TIMEZONE = os.getenv('REPORT_TIMEZONE') or 'Asia/Bangkok'
BUYER_CAPTION = os.getenv('REPORT_BUYER_CAPTION') or 'ในนาม / On behalf of: บริษัท / ห้างหุ้นส่วนจำกัด'

CATEGORY_LABELS = MappingProxyType({
    'eating': 'อาหาร / Eating',
    'traveling': 'การเดินทาง / Traveling',
    'accommodation': 'ที่พัก / Accommodation',
    'equipment': 'อุปกรณ์ / Equipment',
    'other': 'อื่นๆ / Other',
})

# Extension -> how the appendix treats the stored receipt.
RECEIPT_TYPES = MappingProxyType({
    '.jpg': 'image',
    '.jpeg': 'image',
    '.png': 'image',
    '.gif': 'image',
    '.bmp': 'image',
    '.pdf': 'PDF',
    '.heic': 'HEIC',
    '.doc': 'Word',
    '.docx': 'Word',
})
IMAGE_EXTENSIONS = frozenset(ext for ext, kind in RECEIPT_TYPES.items() if kind == 'image')

THAI_DIGITS = ('ศูนย์', 'หนึ่ง', 'สอง', 'สาม', 'สี่', 'ห้า', 'หก', 'เจ็ด', 'แปด', 'เก้า')
THAI_PLACES = ('', 'สิบ', 'ร้อย', 'พัน', 'หมื่น', 'แสน')
THAI_MONTHS = (
    'มกราคม', 'กุมภาพันธ์', 'มีนาคม', 'เมษายน', 'พฤษภาคม', 'มิถุนายน',
    'กรกฎาคม', 'สิงหาคม', 'กันยายน', 'ตุลาคม', 'พฤศจิกายน', 'ธันวาคม',
)
BUDDHIST_ERA_OFFSET = 543

ELLIPSIS = '...'
GENERIC_EXPENSE_NAME = 'ค่าใช้จ่าย / Expense'
BLANK_POSITION = '_______________'

TITLE = 'OBO-Berk (โอโบ-เบิก)'
SUBTITLE = 'รายงานค่าใช้จ่าย / Expense Report'
TOTAL_LABEL = 'รวมทั้งสิ้น / Total'
CURRENCY_LABEL = 'บาท'
AMOUNT_WORDS_CAPTION = 'จำนวนเงิน (ตัวอักษร) / Amount in words:'
CERTIFICATION_TEMPLATE = (
    'ข้าพเจ้า {name} ตำแหน่ง {position} ขอรับรองว่า รายจ่ายข้างต้นนี้ '
    'ไม่อาจเรียกเก็บใบเสร็จรับเงินจากผู้รับได้ และข้าพเจ้าได้จ่ายไปในงานของทางบริษัท / '
    'ห้างหุ้นส่วนจำกัด โดยแท้ ตั้งแต่วันที่ {start} จนถึงวันที่ {end}'
)
SIGNATURE_PREFIX = 'ลงชื่อ'
CLAIMANT_ROLE = 'ผู้เบิก / Claimant'
APPROVER_ROLE = 'ผู้อนุมัติ / Approver'
APPENDIX_HEADING = 'รายละเอียดค่าใช้จ่ายและใบเสร็จ / Expense Details with Receipts'

RECEIPT_NONE = 'ใบเสร็จ/Receipt: No receipt uploaded'
RECEIPT_MISSING = 'ใบเสร็จ/Receipt: File not found'
RECEIPT_ATTACHED = 'ใบเสร็จ/Receipt:'
RECEIPT_ERROR = 'ใบเสร็จ/Receipt: Error loading'

# ---------------------------------------------------------------------------
# Page geometry (points, measured from the top of the page)
# ---------------------------------------------------------------------------
PAGE_WIDTH, PAGE_HEIGHT = A4
TOP_MARGIN = 50
CONTENT_BOTTOM = PAGE_HEIGHT - 72
TABLE_LEFT = 50
TABLE_WIDTH = 500
ROW_HEIGHT = 25
ROW_TEXT_OFFSET = 16
CELL_PADDING = 5

# (header, width, alignment); widths add up to TABLE_WIDTH
COLUMNS: Tuple[Tuple[str, float, str], ...] = (
    ('ลำดับ/No.', 35, 'center'),
    ('วันที่/Date', 62, 'center'),
    ('ร้านค้า/Shop', 118, 'left'),
    ('รายละเอียด/Detail', 125, 'left'),
    ('จำนวนเงิน/Amount', 75, 'right'),
    ('หมายเหตุ/Note', 85, 'left'),
)

SECTION_GAP = 30
LINE_GAP = 18
CLOSING_HEIGHT = 200
SUPERVISOR_BLOCK_HEIGHT = 70
SIGNATURE_LEFT = TABLE_LEFT + 220
SIGNATURE_RULE = '_' * 20

APPENDIX_HEADING_HEIGHT = 35
CARD_WIDTH = 250
CARD_HEIGHT = 340
CARD_COLUMNS = (50, 310)
CARD_ROW_SPACING = 360
SLOTS_PER_PAGE = 4
CARD_LINE = 13

TEXT_COLOR = '#000000'
HEADER_FILL = '#F0F0F0'
ROW_FILLS = ('#FFFFFF', '#F9F9F9')
TOTAL_FILL = '#E8F4F8'
RECEIPT_BORDER = '#D9E0EB'


# ---------------------------------------------------------------------------
# Helper functions exposed for reuse + unit tests
# ---------------------------------------------------------------------------
def format_amount(value: Decimal | float | int | str | None) -> str:
    '''Format an amount with thousands separators and two decimals.'''
    amount = Decimal(str(value or 0)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
    return f'{amount:,.2f}'


def total_amount(expenses: Iterable[Expense]) -> Decimal:
    return sum((expense.amount for expense in expenses), Decimal('0'))


def expense_date_range(expenses: Sequence[Expense]) -> Tuple[date, date]:
    dates = [expense.date for expense in expenses]
    return min(dates), max(dates)


def category_label(category: str | None) -> str:
    '''Bilingual label for a category; unknown values are echoed back.'''
    if not category:
        return ''
    return CATEGORY_LABELS.get(category, category)


def receipt_kind(path: Path | str) -> str:
    '''Return ``'image'`` for embeddable receipts, else a short file type name.'''
    suffix = Path(path).suffix.lower()
    if suffix in RECEIPT_TYPES:
        return RECEIPT_TYPES[suffix]
    return suffix.lstrip('.').upper() or 'Unknown'


def thai_date(value: date) -> str:
    '''Short Thai date, e.g. ``10/01/2568``.'''
    return f'{value.day:02d}/{value.month:02d}/{value.year + BUDDHIST_ERA_OFFSET}'


def thai_long_date(value: date) -> str:
    '''Long Thai date, e.g. ``10 มกราคม 2568``.'''
    return f'{value.day} {THAI_MONTHS[value.month - 1]} {value.year + BUDDHIST_ERA_OFFSET}'


def thai_datetime(value: datetime) -> str:
    return f'{thai_long_date(value.date())} {value:%H:%M} น.'


def _thai_number(number: int, has_higher: bool = False) -> str:
    if number == 0:
        return ''
    if number >= 1_000_000:
        millions, rest = divmod(number, 1_000_000)
        return _thai_number(millions, has_higher) + 'ล้าน' + _thai_number(rest, True)
    digits = str(number)
    words: List[str] = []
    for idx, char in enumerate(digits):
        digit = int(char)
        place = len(digits) - idx - 1
        if digit == 0:
            continue
        if place == 1 and digit == 1:
            words.append('สิบ')
        elif place == 1 and digit == 2:
            words.append('ยี่สิบ')
        elif place == 0 and digit == 1 and (has_higher or len(digits) > 1):
            words.append('เอ็ด')
        else:
            words.append(THAI_DIGITS[digit] + THAI_PLACES[place])
    return ''.join(words)


def bahttext(value: Decimal | float | int | str) -> str:
    '''Spell out an amount in Thai baht, e.g. ``หนึ่งร้อยหกสิบห้าบาทห้าสิบสตางค์``.'''
    amount = Decimal(str(value)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
    if amount < 0:
        raise ValueError('Amount must not be negative')
    baht = int(amount)
    satang = int((amount - baht) * 100)
    if baht == 0 and satang == 0:
        return 'ศูนย์บาทถ้วน'
    words = ''
    if baht:
        words += _thai_number(baht) + 'บาท'
    if satang:
        words += _thai_number(satang) + 'สตางค์'
    else:
        words += 'ถ้วน'
    return words


def fit_text(text: str, font_name: str, font_size: float, max_width: float) -> str:
    '''Trim ``text`` to ``max_width`` points, appending ``...`` when cut.'''
    text = text or ''
    if pdfmetrics.stringWidth(text, font_name, font_size) <= max_width:
        return text
    if pdfmetrics.stringWidth(ELLIPSIS, font_name, font_size) > max_width:
        return ''
    lo, hi = 0, len(text)
    best = ELLIPSIS
    while lo <= hi:
        mid = (lo + hi) // 2
        candidate = text[:mid].rstrip() + ELLIPSIS
        if pdfmetrics.stringWidth(candidate, font_name, font_size) <= max_width:
            best = candidate
            lo = mid + 1
        else:
            hi = mid - 1
    return best


def wrap_text(text: str, font_name: str, font_size: float, max_width: float) -> List[str]:
    '''Word-wrap on spaces, breaking by character inside words too wide for a line.

    Thai runs have no spaces between words, so long runs are split wherever
    the width runs out.
    '''
    lines: List[str] = []
    current = ''

    def width(value: str) -> float:
        return pdfmetrics.stringWidth(value, font_name, font_size)

    for word in (text or '').split():
        candidate = f'{current} {word}' if current else word
        if width(candidate) <= max_width:
            current = candidate
            continue
        if current:
            lines.append(current)
            current = ''
        if width(word) <= max_width:
            current = word
            continue
        for char in word:
            if not current or width(current + char) <= max_width:
                current += char
            else:
                lines.append(current)
                current = char
    if current:
        lines.append(current)
    return lines


def report_filename(project_name: str, timestamp_ms: int) -> str:
    '''Download name: whitespace in the project name becomes ``-``.'''
    slug = re.sub(r'\s+', '-', (project_name or '').strip()) or 'project'
    return f'expenses-{slug}-{timestamp_ms}.pdf'


# ---------------------------------------------------------------------------
# Internal helpers for PDF assembly
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class _Fonts:
    regular: str
    bold: str
    # TH Sarabun is drawn small for its point size; scale it up to match Helvetica.
    scale: float = 1.0

    def size(self, points: float) -> float:
        return round(points * self.scale, 1)


@dataclass
class _PageCursor:
    '''Per-render layout state: vertical offset, page number and grid slot.'''
    canvas: Any
    y: float = TOP_MARGIN
    page: int = 1
    slot: int = 0

    def fits(self, height: float) -> bool:
        return self.y + height <= CONTENT_BOTTOM

    def new_page(self) -> None:
        self.canvas.showPage()
        self.page += 1
        self.y = TOP_MARGIN
        self.slot = 0


@lru_cache(maxsize=1)
def _register_fonts() -> _Fonts:
    try:
        if FONT_REGULAR_PATH.exists():
            from reportlab.pdfbase.ttfonts import TTFont

            pdfmetrics.registerFont(TTFont('THSarabunNew', str(FONT_REGULAR_PATH)))
            bold_path = FONT_BOLD_PATH if FONT_BOLD_PATH.exists() else FONT_REGULAR_PATH
            pdfmetrics.registerFont(TTFont('THSarabunNew-Bold', str(bold_path)))
            return _Fonts('THSarabunNew', 'THSarabunNew-Bold', scale=1.35)
        logger.warning('Thai font not found at %s; falling back to Helvetica', FONT_REGULAR_PATH)
    except Exception:
        logger.warning('Could not register Thai fonts from %s', FONT_DIR, exc_info=True)
    return _Fonts('Helvetica', 'Helvetica-Bold')


def font_status() -> Dict[str, str]:
    fonts = _register_fonts()
    return {'regular': fonts.regular, 'bold': fonts.bold, 'fontDir': str(FONT_DIR)}


def _report_timezone() -> tzinfo:
    try:
        return ZoneInfo(REPORT_TIMEZONE)
    except ZoneInfoNotFoundError:
        logger.warning('Unknown timezone %s; using UTC+07:00', REPORT_TIMEZONE)
        return timezone(timedelta(hours=7), 'ICT')


def _local_timestamp(generated_at: Optional[datetime]) -> datetime:
    tz = _report_timezone()
    if generated_at is None:
        return datetime.now(tz)
    if generated_at.tzinfo is None:
        return generated_at
    return generated_at.astimezone(tz)


def _baseline(top: float) -> float:
    return PAGE_HEIGHT - top


def _draw_text(c, text: str, x: float, top: float, font: str, size: float, align: str = 'left') -> None:
    c.setFont(font, size)
    if align == 'right':
        c.drawRightString(x, _baseline(top), text)
    elif align == 'center':
        c.drawCentredString(x, _baseline(top), text)
    else:
        c.drawString(x, _baseline(top), text)


def _draw_row(c, fonts: _Fonts, top: float, values: Sequence[str], fill: str,
              bold: bool = False, aligns: Optional[Sequence[str]] = None) -> None:
    '''Fill one table row, stroke every cell and write its (truncated) values.'''
    c.setStrokeColor(colors.black)
    c.setFillColor(colors.HexColor(fill))
    c.rect(TABLE_LEFT, PAGE_HEIGHT - top - ROW_HEIGHT, TABLE_WIDTH, ROW_HEIGHT, stroke=1, fill=1)
    c.setFillColor(colors.HexColor(TEXT_COLOR))

    font = fonts.bold if bold else fonts.regular
    size = fonts.size(10 if bold else 9)
    x = TABLE_LEFT
    for idx, (value, (_, width, default_align)) in enumerate(zip(values, COLUMNS)):
        if idx:
            c.line(x, PAGE_HEIGHT - top, x, PAGE_HEIGHT - top - ROW_HEIGHT)
        align = aligns[idx] if aligns else default_align
        text = fit_text(str(value), font, size, width - 2 * CELL_PADDING)
        if text:
            if align == 'right':
                anchor = x + width - CELL_PADDING
            elif align == 'center':
                anchor = x + width / 2
            else:
                anchor = x + CELL_PADDING
            _draw_text(c, text, anchor, top + ROW_TEXT_OFFSET, font, size, align)
        x += width


def _draw_table_header(cursor: _PageCursor, fonts: _Fonts) -> None:
    _draw_row(cursor.canvas, fonts, cursor.y, [header for header, _, _ in COLUMNS], HEADER_FILL, bold=True)
    cursor.y += ROW_HEIGHT


def _draw_title(cursor: _PageCursor, fonts: _Fonts, category: Optional[str]) -> None:
    c = cursor.canvas
    center = PAGE_WIDTH / 2
    _draw_text(c, TITLE, center, cursor.y + 20, fonts.bold, fonts.size(20), 'center')
    cursor.y += 28
    _draw_text(c, SUBTITLE, center, cursor.y + 16, fonts.regular, fonts.size(15), 'center')
    cursor.y += 22
    if category:
        _draw_text(c, f'ประเภท / Category: {category_label(category)}', center,
                   cursor.y + 14, fonts.bold, fonts.size(12), 'center')
        cursor.y += 20
    cursor.y += 10


def _metadata_lines(project: Project, generated_at: datetime) -> List[str]:
    owner = project.owner
    lines = [f'โครงการ / Project: {project.name}']
    if project.description:
        lines.append(f'รายละเอียด / Description: {project.description}')
    contact = f' ({owner.email})' if owner.email else ''
    lines.append(f'เจ้าของโครงการ / Owner: {owner.name}{contact}')
    if owner.department:
        lines.append(f'แผนก / Department: {owner.department}')
    if project.supervisor is not None:
        lines.append(f'ผู้อนุมัติ / Supervisor: {project.supervisor.name}')
    lines.append(f'สร้างรายงาน / Generated: {thai_datetime(generated_at)}')
    lines.append(BUYER_CAPTION)
    return lines


def _draw_metadata(cursor: _PageCursor, fonts: _Fonts, project: Project, generated_at: datetime) -> None:
    size = fonts.size(11)
    for line in _metadata_lines(project, generated_at):
        text = fit_text(line, fonts.regular, size, TABLE_WIDTH)
        _draw_text(cursor.canvas, text, TABLE_LEFT, cursor.y + 12, fonts.regular, size)
        cursor.y += 16
    cursor.y += 10


def _draw_expense_table(cursor: _PageCursor, fonts: _Fonts, expenses: Sequence[Expense]) -> Decimal:
    _draw_table_header(cursor, fonts)
    for index, expense in enumerate(expenses):
        if not cursor.fits(ROW_HEIGHT):
            cursor.new_page()
            _draw_table_header(cursor, fonts)
        values = (
            str(index + 1),
            thai_date(expense.date),
            expense.display_name or '-',
            expense.detail or '-',
            format_amount(expense.amount),
            expense.notes or '-',
        )
        _draw_row(cursor.canvas, fonts, cursor.y, values, ROW_FILLS[index % 2])
        cursor.y += ROW_HEIGHT

    total = total_amount(expenses)
    if not cursor.fits(ROW_HEIGHT):
        cursor.new_page()
        _draw_table_header(cursor, fonts)
    _draw_row(
        cursor.canvas,
        fonts,
        cursor.y,
        ('', '', '', TOTAL_LABEL, format_amount(total), CURRENCY_LABEL),
        TOTAL_FILL,
        bold=True,
        aligns=('center', 'center', 'left', 'right', 'right', 'left'),
    )
    cursor.y += ROW_HEIGHT
    return total


def _draw_signature(cursor: _PageCursor, fonts: _Fonts, user: User, role: str) -> None:
    c = cursor.canvas
    size = fonts.size(12)
    prefix = f'{SIGNATURE_PREFIX} '
    _draw_text(c, f'{prefix}{SIGNATURE_RULE} {role}', SIGNATURE_LEFT, cursor.y + 14, fonts.regular, size)
    prefix_width = pdfmetrics.stringWidth(prefix, fonts.regular, size)
    rule_width = pdfmetrics.stringWidth(SIGNATURE_RULE, fonts.regular, size)
    cursor.y += 30
    _draw_text(c, f'({user.name})', SIGNATURE_LEFT + prefix_width + rule_width / 2,
               cursor.y + 12, fonts.regular, fonts.size(11), 'center')
    cursor.y += 20


def _draw_closing(cursor: _PageCursor, fonts: _Fonts, project: Project,
                  expenses: Sequence[Expense], total: Decimal) -> None:
    '''Amount in words, certification paragraph and signature lines.'''
    c = cursor.canvas
    cursor.y += SECTION_GAP
    needed = CLOSING_HEIGHT + (SUPERVISOR_BLOCK_HEIGHT if project.supervisor is not None else 0)
    if not cursor.fits(needed):
        cursor.new_page()

    size = fonts.size(12)
    _draw_text(c, AMOUNT_WORDS_CAPTION, TABLE_LEFT, cursor.y + 14, fonts.regular, size)
    caption_width = pdfmetrics.stringWidth(AMOUNT_WORDS_CAPTION + ' ', fonts.regular, size)
    words = f'({bahttext(total)})'
    if pdfmetrics.stringWidth(words, fonts.bold, size) <= TABLE_WIDTH - caption_width:
        _draw_text(c, words, TABLE_LEFT + caption_width, cursor.y + 14, fonts.bold, size)
    else:
        cursor.y += LINE_GAP
        _draw_text(c, fit_text(words, fonts.bold, size, TABLE_WIDTH), TABLE_LEFT, cursor.y + 14, fonts.bold, size)
    cursor.y += 30

    start, end = expense_date_range(expenses)
    owner = project.owner
    paragraph = CERTIFICATION_TEMPLATE.format(
        name=owner.name,
        position=owner.department or BLANK_POSITION,
        start=thai_long_date(start),
        end=thai_long_date(end),
    )
    for line in wrap_text(paragraph, fonts.regular, size, TABLE_WIDTH):
        _draw_text(c, line, TABLE_LEFT, cursor.y + 14, fonts.regular, size)
        cursor.y += LINE_GAP
    cursor.y += 20

    _draw_signature(cursor, fonts, owner, CLAIMANT_ROLE)
    if project.supervisor is not None:
        cursor.y += 20
        _draw_signature(cursor, fonts, project.supervisor, APPROVER_ROLE)


def _embed_receipt(c, expense: Expense, upload_dir: Optional[Path], x: float, top: float,
                   box_width: float, box_height: float) -> str:
    '''Draw the receipt into its box when possible and return the caption to show.'''
    path = resolve_receipt_path(expense.receipt, upload_dir)
    if path is None:
        return RECEIPT_NONE
    try:
        present = path.is_file()
    except OSError:
        logger.warning('Could not check receipt %s for expense %s', path, expense.id, exc_info=True)
        present = False
    if not present:
        return RECEIPT_MISSING
    kind = receipt_kind(path)
    if kind != 'image':
        return f'{RECEIPT_ATTACHED} {kind} file'
    try:
        reader = ImageReader(str(path))
        img_width, img_height = reader.getSize()
        scale = min(box_width / img_width, box_height / img_height)
        width, height = img_width * scale, img_height * scale
        c.drawImage(reader, x, PAGE_HEIGHT - top - height, width=width, height=height)
    except Exception:
        logger.warning('Could not embed receipt %s for expense %s', path, expense.id, exc_info=True)
        return RECEIPT_ERROR
    return RECEIPT_ATTACHED


def _draw_receipt_card(c, fonts: _Fonts, index: int, expense: Expense, x: float, top: float,
                       upload_dir: Optional[Path]) -> None:
    small = fonts.size(9)
    width = CARD_WIDTH
    title = f'{index}. {expense.display_name or GENERIC_EXPENSE_NAME}'
    _draw_text(c, fit_text(title, fonts.bold, fonts.size(11), width), x, top + 12, fonts.bold, fonts.size(11))

    offset = 28
    lines = [f'วันที่/Date: {thai_date(expense.date)}']
    if expense.detail:
        lines.append(f'รายละเอียด/Detail: {expense.detail}')
    lines.append(f'ประเภท/Type: {category_label(expense.category)}')
    lines.append(f'จำนวน/Amount: {format_amount(expense.amount)} {CURRENCY_LABEL}')
    for line in lines:
        _draw_text(c, fit_text(line, fonts.regular, small, width), x, top + offset, fonts.regular, small)
        offset += CARD_LINE

    caption_top = top + offset + 4
    box_top = caption_top + 8
    box_width = width - 10
    box_height = top + CARD_HEIGHT - 24 - box_top
    caption = _embed_receipt(c, expense, upload_dir, x, box_top, box_width, box_height)
    _draw_text(c, caption, x, caption_top, fonts.regular, fonts.size(8))

    if expense.notes:
        note = fit_text(f'หมายเหตุ/Note: {expense.notes}', fonts.regular, fonts.size(8), width)
        _draw_text(c, note, x, top + CARD_HEIGHT - 8, fonts.regular, fonts.size(8))


def _draw_receipt_appendix(cursor: _PageCursor, fonts: _Fonts, expenses: Sequence[Expense],
                           upload_dir: Optional[Path]) -> None:
    cursor.new_page()
    _draw_text(cursor.canvas, APPENDIX_HEADING, TABLE_LEFT, cursor.y + 16, fonts.bold, fonts.size(16))
    grid_top = cursor.y + APPENDIX_HEADING_HEIGHT
    for index, expense in enumerate(expenses, start=1):
        if cursor.slot >= SLOTS_PER_PAGE:
            cursor.new_page()
            grid_top = cursor.y
        x = CARD_COLUMNS[cursor.slot % 2]
        top = grid_top + (cursor.slot // 2) * CARD_ROW_SPACING
        _draw_receipt_card(cursor.canvas, fonts, index, expense, x, top, upload_dir)
        cursor.slot += 1


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def render_expense_report(
    project: Project,
    expenses: Sequence[Expense],
    category: Optional[str] = None,
    *,
    generated_at: Optional[datetime] = None,
    upload_dir: Optional[Path | str] = None,
    canvasmaker: Optional[Callable[..., Any]] = None,
) -> bytes:
    '''Render the reimbursement PDF for ``project`` and return its bytes.

    ``expenses`` must be non-empty and already in report order (date
    ascending). ``generated_at`` is printed in the report timezone; with the
    same inputs and timestamp the output is byte-for-byte identical.
    '''
    if not expenses:
        raise ValueError('A report needs at least one expense')

    fonts = _register_fonts()
    stamp = _local_timestamp(generated_at)
    receipts_dir = Path(upload_dir) if upload_dir is not None else None

    buf = BytesIO()
    make_canvas = canvasmaker or canvas.Canvas
    c = make_canvas(buf, pagesize=A4, invariant=1, pageCompression=0)
    c.setTitle(f'Expense Report - {project.name}')
    c.setAuthor('OBO-Berk')
    c.setSubject(SUBTITLE)

    cursor = _PageCursor(c)
    _draw_title(cursor, fonts, category)
    _draw_metadata(cursor, fonts, project, stamp)
    total = _draw_expense_table(cursor, fonts, expenses)
    _draw_closing(cursor, fonts, project, expenses, total)
    _draw_receipt_appendix(cursor, fonts, expenses, receipts_dir)

    c.save()
    logger.info(
        'Rendered report for project %s: %d expenses, total %s, %d pages',
        project.id, len(expenses), format_amount(total), cursor.page,
    )
    return buf.getvalue()
