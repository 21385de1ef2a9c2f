import csv
import io
import logging
from typing import Any, Iterable, List, Optional, Tuple

from models.code_models import CodeImportItem
from service.code_generator_service import normalize_code

logger = logging.getLogger(__name__)


def _field(item: Any, key: str) -> str:
    value = item.get(key) if isinstance(item, dict) else getattr(item, key, None)
    return value or ""


def export_codes_csv(items: Iterable[Any], include_names: bool = True) -> str:
    """
    Write codes as CSV with a "code,name" header ("code" alone when names are
    left out). Fields holding a comma, quote or line break are quoted with
    inner quotes doubled, so parse_codes_csv reads back the same fields.
    """
    out = io.StringIO()
    writer = csv.writer(out, quoting=csv.QUOTE_MINIMAL)
    writer.writerow(["code", "name"] if include_names else ["code"])
    for item in items:
        if include_names:
            writer.writerow([_field(item, "code"), _field(item, "name")])
        else:
            writer.writerow([_field(item, "code")])
    return out.getvalue()


def parse_codes_csv(text: str) -> Tuple[List[CodeImportItem], int]:
    """
    Read uploaded code rows.

    A first row with a "code" cell (any case) is a header and picks the code
    and optional name columns. Without one, column one is the code and column
    two the name, and a blank name there leaves the stored name unchanged.
    Codes lose all whitespace and are upper-cased. Rows without a code are
    skipped; returns the items and the number of skipped rows.
    """
    if text.startswith("\ufeff"):
        text = text[1:]
    rows = [row for row in csv.reader(io.StringIO(text, newline="")) if any(cell.strip() for cell in row)]
    if not rows:
        return [], 0

    header = [cell.strip().lower() for cell in rows[0]]
    code_idx: int = 0
    name_idx: Optional[int] = 1
    has_header = "code" in header
    if has_header:
        code_idx = header.index("code")
        name_idx = header.index("name") if "name" in header else None
        rows = rows[1:]

    items = []
    skipped = 0
    for row in rows:
        code = normalize_code(row[code_idx]) if len(row) > code_idx else ""
        if not code:
            skipped += 1
            continue
        name = row[name_idx] if name_idx is not None and len(row) > name_idx else None
        if not has_header and not (name or "").strip():
            name = None
        items.append(CodeImportItem(code=code, name=name))

    if skipped:
        logger.warning(f"Skipped {skipped} CSV row(s) without a code")
    return items, skipped
