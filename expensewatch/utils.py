"""Utility functions for ExpenseWatch."""

import calendar
import re
import unicodedata
from datetime import date, datetime
from difflib import get_close_matches
from typing import Any, Optional

# Expense types published by the Câmara quota (CEAP), normalized without accents
KNOWN_CATEGORIES = [
    "MANUTENCAO DE ESCRITORIO DE APOIO A ATIVIDADE PARLAMENTAR",
    "COMBUSTIVEIS E LUBRIFICANTES",
    "DIVULGACAO DA ATIVIDADE PARLAMENTAR",
    "PASSAGEM AEREA - SIGEPA",
    "PASSAGEM AEREA - RPA",
    "PASSAGEM AEREA - REEMBOLSO",
    "PASSAGENS TERRESTRES, MARITIMAS OU FLUVIAIS",
    "TELEFONIA",
    "SERVICOS POSTAIS",
    "LOCACAO OU FRETAMENTO DE VEICULOS AUTOMOTORES",
    "LOCACAO OU FRETAMENTO DE AERONAVES",
    "LOCACAO OU FRETAMENTO DE EMBARCACOES",
    "CONSULTORIAS, PESQUISAS E TRABALHOS TECNICOS",
    "FORNECIMENTO DE ALIMENTACAO DO PARLAMENTAR",
    "HOSPEDAGEM, EXCETO DO PARLAMENTAR NO DISTRITO FEDERAL",
    "SERVICO DE TAXI, PEDAGIO E ESTACIONAMENTO",
    "SERVICO DE SEGURANCA PRESTADO POR EMPRESA ESPECIALIZADA",
    "PARTICIPACAO EM CURSO, PALESTRA OU EVENTO SIMILAR",
    "ASSINATURA DE PUBLICACOES",
]

# Keyword fallbacks when fuzzy matching is inconclusive (checked in order)
CATEGORY_KEYWORDS = [
    ("COMBUST", "COMBUSTIVEIS E LUBRIFICANTES"),
    ("DIVULGA", "DIVULGACAO DA ATIVIDADE PARLAMENTAR"),
    ("TELEFON", "TELEFONIA"),
    ("POSTA", "SERVICOS POSTAIS"),
    ("AERONAVE", "LOCACAO OU FRETAMENTO DE AERONAVES"),
    ("EMBARCA", "LOCACAO OU FRETAMENTO DE EMBARCACOES"),
    ("VEICULO", "LOCACAO OU FRETAMENTO DE VEICULOS AUTOMOTORES"),
    ("CONSULTORIA", "CONSULTORIAS, PESQUISAS E TRABALHOS TECNICOS"),
    ("ALIMENTA", "FORNECIMENTO DE ALIMENTACAO DO PARLAMENTAR"),
    ("HOSPEDAGEM", "HOSPEDAGEM, EXCETO DO PARLAMENTAR NO DISTRITO FEDERAL"),
    ("TAXI", "SERVICO DE TAXI, PEDAGIO E ESTACIONAMENTO"),
    ("SEGURANCA", "SERVICO DE SEGURANCA PRESTADO POR EMPRESA ESPECIALIZADA"),
    ("ESCRITORIO", "MANUTENCAO DE ESCRITORIO DE APOIO A ATIVIDADE PARLAMENTAR"),
    ("PUBLICA", "ASSINATURA DE PUBLICACOES"),
]

UNSPECIFIED_CATEGORY = "Despesa Não Especificada"
UNIDENTIFIED_COUNTERPARTY = "Fornecedor Não Identificado"
SYNTHETIC_COUNTERPARTY = re.compile(r"Fornecedor \d{1,6}")


def format_amount(amount: Optional[float]) -> str:
    """Format a BRL amount compactly for console summaries.

    Rules:
    - None → —
    - 0 → R$0
    - 950.5 → R$950.50
    - 1,200 → R$1.2K
    - 1,500,000 → R$1.5M
    - 2,000,000,000 → R$2B
    """
    if amount is None:
        return "—"

    if amount == 0:
        return "R$0"

    if amount < 1000:
        return f"R${amount:,.2f}"

    for divisor, suffix in ((1_000_000_000, "B"), (1_000_000, "M"), (1000, "K")):
        if amount >= divisor:
            scaled = amount / divisor
            if scaled == int(scaled):
                return f"R${int(scaled)}{suffix}"
            return f"R${scaled:.1f}{suffix}".replace(f".0{suffix}", suffix)
    return f"R${amount:,.2f}"


def collapse_whitespace(value: Any) -> str:
    """Trim and collapse internal whitespace; non-strings become ''."""
    if not isinstance(value, str):
        return ""
    return re.sub(r"\s+", " ", value).strip()


def strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def synthetic_counterparty_name(document: str) -> str:
    return f"Fornecedor {document[:6]}"


def is_placeholder_counterparty_name(name: Optional[str]) -> bool:
    """True for names the validator made up rather than read from the source."""
    if not name or name == UNIDENTIFIED_COUNTERPARTY:
        return True
    return SYNTHETIC_COUNTERPARTY.fullmatch(name) is not None


def normalize_text(text: Optional[str]) -> str:
    """Upper-case, accent-free, punctuation-light form used for matching."""
    if not text:
        return ""
    normalized = strip_accents(text).upper()
    normalized = re.sub(r"[^\w\s,\-]", " ", normalized)
    normalized = re.sub(r"\s+", " ", normalized).strip(" .")
    return normalized


def digits_only(value: Any) -> str:
    if value is None:
        return ""
    return re.sub(r"\D", "", str(value))


def slugify(text: str) -> str:
    """Path-safe lowercase identifier."""
    slug = re.sub(r"[^a-z0-9]+", "-", strip_accents(text).lower())
    return slug.strip("-") or "unknown"


def parse_amount(value: Any) -> Optional[float]:
    """Parse numbers that may arrive as floats, ints or Brazilian strings."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip().replace("R$", "").strip()
        if not text:
            return None
        if "," in text:
            text = text.replace(".", "").replace(",", ".")
        try:
            return float(text)
        except ValueError:
            return None
    return None


def parse_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != int(number):
        return None
    return int(number)


def parse_date(value: Any) -> Optional[date]:
    """Parse ISO dates, ISO datetimes and DD/MM/YYYY strings."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None

    text = value.strip()
    try:
        if "T" in text:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        if "/" in text:
            return datetime.strptime(text, "%d/%m/%Y").date()
        return datetime.strptime(text[:10], "%Y-%m-%d").date()
    except ValueError:
        return None


def is_round_amount(amount: float, base: float = 100.0) -> bool:
    """True when the amount is a whole multiple of ``base``."""
    if amount <= 0 or base <= 0:
        return False
    multiple = round(amount / base)
    return multiple > 0 and abs(amount - multiple * base) < 0.005


def is_end_of_month(day: date, window_days: int) -> bool:
    """True when ``day`` falls within the last ``window_days`` of its month."""
    last_day = calendar.monthrange(day.year, day.month)[1]
    return day.day > last_day - window_days


def standardize_category(raw: Optional[str]) -> str:
    """Map a free-text expense type onto the known category list.

    Exact match first, then difflib fuzzy match, then keyword rules.
    Unknown categories are kept in their normalized form.
    """
    normalized = normalize_text(raw)
    if not normalized:
        return normalize_text(UNSPECIFIED_CATEGORY)

    if normalized in KNOWN_CATEGORIES:
        return normalized

    matches = get_close_matches(normalized, KNOWN_CATEGORIES, n=1, cutoff=0.85)
    if matches:
        return matches[0]

    for keyword, category in CATEGORY_KEYWORDS:
        if keyword in normalized:
            return category

    return normalized
