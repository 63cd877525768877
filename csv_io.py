"""
CSV (and spreadsheet) exchange for production and batch records.

Both exports are semicolon separated, UTF-8 with a BOM so spreadsheet
programs pick up accents. Imports are lenient: the separator is sniffed from
the header line, dates may be ISO or DD/MM/YYYY, and numbers may use a
decimal comma. Rows that cannot be read are skipped and counted.
"""
from dataclasses import dataclass, field
from datetime import datetime
import io
import logging
import re

import pandas as pd
from openpyxl.styles import Font, PatternFill, Alignment
from openpyxl.utils import get_column_letter

from metrics import (
    calculate_production_metrics, find_active_batch, has_floor_eggs,
    AVIARY_IDS, FEATHERING_CHOICES, DEFAULT_FEATHERING, NO_BATCH,
)

logger = logging.getLogger(__name__)

CSV_SEPARATOR = ';'

PRODUCTION_HEADERS = [
    'Data', 'Aviario', 'Lote', 'Aves Vivas', 'Ovos Limpos', 'Ovos Sujos',
    'Ovos Trincados', 'Ovos Cama', 'Peso Ovos', 'Peso Aves', 'Mortalidade', 'Observacoes'
]

BATCH_HEADERS = ['Data', 'Aviario', 'Lote', 'Idade (Sem)', 'Peso (g)', 'Uniformidade', 'Empenamento']

# Rows shorter than this (everything up to mortality) are not production rows
MIN_PRODUCTION_COLUMNS = 11

# The date of a batch row may be preceded by up to two id columns
BATCH_DATE_SEARCH_COLUMNS = 3

DEFAULT_IMPORT_AVIARY = '1'
DEFAULT_IMPORT_BATCH = 'S/L'

_ISO_DATE = re.compile(r'^\d{4}-\d{2}-\d{2}$')
_BR_DATE = re.compile(r'^\d{2}/\d{2}/\d{4}$')


class CSVImportError(Exception):
    """The uploaded file could not be read as a table at all."""


@dataclass
class ImportResult:
    records: list = field(default_factory=list)
    skipped: int = 0

    @property
    def imported(self):
        return len(self.records)


def production_filename(today=None):
    today = today or datetime.now().date()
    return f"producao_{today.isoformat()}.csv"

def batch_filename(today=None):
    today = today or datetime.now().date()
    return f"lotes_siglab_{today.isoformat()}.csv"

def production_xlsx_filename(today=None):
    today = today or datetime.now().date()
    return f"producao_{today.isoformat()}.xlsx"


def detect_separator(header_line):
    if ';' in header_line:
        return ';'
    if ',' in header_line:
        return ','
    if '\t' in header_line:
        return '\t'
    return ','

def parse_flexible_date(value):
    """
    'YYYY-MM-DD' or 'DD/MM/YYYY' -> date. Anything else -> None.
    """
    if not value:
        return None
    value = value.strip()
    try:
        if _ISO_DATE.match(value):
            return datetime.strptime(value, '%Y-%m-%d').date()
        if _BR_DATE.match(value):
            return datetime.strptime(value, '%d/%m/%Y').date()
    except ValueError:
        return None
    return None

def to_number(value, cast=float):
    if value is None:
        return cast(0)
    text = str(value).strip().replace(',', '.')
    if not text:
        return cast(0)
    try:
        return cast(float(text))
    except (ValueError, OverflowError):
        return cast(0)

def _digits(value):
    return re.sub(r'\D', '', value or '')

def _aviary(value):
    aviary_id = _digits(value)
    return aviary_id if aviary_id in AVIARY_IDS else DEFAULT_IMPORT_AVIARY


def _decode(source):
    if hasattr(source, 'read'):
        source = source.read()
    if isinstance(source, bytes):
        try:
            source = source.decode('utf-8-sig')
        except UnicodeDecodeError:
            # Spreadsheet programs on Windows still save Latin-1
            source = source.decode('latin-1')
    return source.lstrip('\ufeff')

def _split_line(line, sep):
    df = pd.read_csv(
        io.StringIO(line),
        sep=sep,
        header=None,
        dtype=str,
        keep_default_na=False,
    )
    if df.empty:
        return []
    return [str(v).strip() for v in df.fillna('').iloc[0]]

def read_rows(source):
    """
    Parse delimited text into a list of cell lists, header row excluded.
    Each line is tokenized on its own: a line that cannot be read (a stray
    quote, for instance) comes back as None so the caller can skip it.
    len(row) is the raw column count, blank cells included.
    """
    text = _decode(source)
    lines = [l for l in text.splitlines() if l.strip()]
    if not lines:
        return []

    sep = detect_separator(lines[0])
    try:
        _split_line(lines[0], sep)
    except (pd.errors.ParserError, ValueError) as e:
        raise CSVImportError(f"Could not read header line: {e}") from e

    rows = []
    for line in lines[1:]:
        try:
            rows.append(_split_line(line, sep))
        except (pd.errors.ParserError, ValueError) as e:
            logger.warning(f"Unreadable line {line[:40]!r}: {e}")
            rows.append(None)
    return rows


# ---------------------------------------------------------------------------
# Production records
# ---------------------------------------------------------------------------

def production_rows(records):
    rows = []
    for r in records:
        rows.append([
            r.date.isoformat(),
            r.aviary_id,
            r.batch_id or NO_BATCH,
            r.live_birds or 0,
            r.clean_eggs or 0,
            r.dirty_eggs or 0,
            r.cracked_eggs or 0,
            r.floor_eggs or 0,
            r.egg_weight_avg or 0,
            r.bird_weight_avg or 0,
            r.mortality or 0,
            r.notes or '',
        ])
    return rows

def export_production_csv(records):
    df = pd.DataFrame(production_rows(records), columns=PRODUCTION_HEADERS)
    return df.to_csv(sep=CSV_SEPARATOR, index=False).encode('utf-8-sig')

def export_production_xlsx(records):
    """
    Same columns as the CSV export, as an .xlsx workbook with a styled header.
    """
    df = pd.DataFrame(production_rows(records), columns=PRODUCTION_HEADERS)
    output = io.BytesIO()

    with pd.ExcelWriter(output, engine='openpyxl') as writer:
        df.to_excel(writer, index=False, sheet_name='Producao')
        ws = writer.sheets['Producao']

        header_font = Font(bold=True, color="FFFFFF")
        header_fill = PatternFill(start_color="4F81BD", end_color="4F81BD", fill_type="solid")
        for cell in ws[1]:
            cell.font = header_font
            cell.fill = header_fill
            cell.alignment = Alignment(horizontal="center", wrap_text=True)

        for i, header in enumerate(PRODUCTION_HEADERS, 1):
            ws.column_dimensions[get_column_letter(i)].width = max(12, len(header) + 2)
        ws.freeze_panes = 'A2'

    output.seek(0)
    return output

def parse_production_csv(source, batches=()):
    """
    Production rows as model-ready dicts. The batch label comes from the
    characterization active on the row's date when one exists; otherwise the
    label in the file is kept.
    """
    result = ImportResult()

    for i, cols in enumerate(read_rows(source), 2):
        if cols is None:
            result.skipped += 1
            continue

        if len(cols) < MIN_PRODUCTION_COLUMNS:
            logger.warning(f"Production import: line {i} has {len(cols)} columns, skipped")
            result.skipped += 1
            continue

        row_date = parse_flexible_date(cols[0])
        if not row_date:
            logger.warning(f"Production import: line {i} has no valid date ({cols[0]!r}), skipped")
            result.skipped += 1
            continue

        aviary_id = _aviary(cols[1])
        clean = to_number(cols[4], int)
        dirty = to_number(cols[5], int)
        cracked = to_number(cols[6], int)
        floor = to_number(cols[7], int) if has_floor_eggs(aviary_id) else 0
        birds = to_number(cols[3], int)

        active = find_active_batch(batches, aviary_id, row_date)
        batch_id = active.batch_id if active else (cols[2] or NO_BATCH)

        rec = {
            'date': row_date,
            'aviary_id': aviary_id,
            'batch_id': batch_id,
            'live_birds': birds,
            'clean_eggs': clean,
            'dirty_eggs': dirty,
            'cracked_eggs': cracked,
            'floor_eggs': floor,
            'egg_weight_avg': to_number(cols[8]),
            'bird_weight_avg': to_number(cols[9]),
            'mortality': to_number(cols[10], int),
            'notes': cols[11] if len(cols) > 11 else '',
        }
        rec.update(calculate_production_metrics(clean, dirty, cracked, floor, birds, aviary_id))
        result.records.append(rec)

    return result


# ---------------------------------------------------------------------------
# Batch characterizations
# ---------------------------------------------------------------------------

def export_batch_csv(batches):
    rows = [[b.date.isoformat(), b.aviary_id, b.batch_id, b.age_weeks or 0,
             b.weight or 0, b.uniformity or 0, b.feathering or DEFAULT_FEATHERING]
            for b in batches]
    df = pd.DataFrame(rows, columns=BATCH_HEADERS)
    return df.to_csv(sep=CSV_SEPARATOR, index=False).encode('utf-8-sig')

def parse_batch_csv(source):
    result = ImportResult()

    for i, cols in enumerate(read_rows(source), 2):
        if cols is None:
            result.skipped += 1
            continue

        row_date = None
        date_idx = -1
        for j, value in enumerate(cols[:BATCH_DATE_SEARCH_COLUMNS]):
            row_date = parse_flexible_date(value)
            if row_date:
                date_idx = j
                break

        if not row_date:
            logger.warning(f"Batch import: line {i} has no date in the first columns, skipped")
            result.skipped += 1
            continue

        def col(offset):
            idx = date_idx + offset
            return cols[idx] if idx < len(cols) else ''

        feathering = col(6) or DEFAULT_FEATHERING
        if feathering not in FEATHERING_CHOICES:
            feathering = DEFAULT_FEATHERING

        result.records.append({
            'date': row_date,
            'aviary_id': _aviary(col(1)),
            'batch_id': col(2) or DEFAULT_IMPORT_BATCH,
            'age_weeks': to_number(col(3), int),
            'current_birds': 0,
            'weight': to_number(col(4)),
            'uniformity': to_number(col(5)),
            'feathering': feathering,
        })

    return result
