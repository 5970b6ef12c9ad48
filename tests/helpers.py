"""Payload builders shaped like the Câmara open-data API."""

from datetime import date
from typing import Any, Callable, Dict, List, Optional

BASE_URL = "https://api.test/api/v2"
TODAY = date(2024, 6, 20)


def expense_item(
    amount: Optional[float] = 100.0,
    supplier: Optional[str] = "12345678000190",
    supplier_name: Optional[str] = "Posto Central Ltda",
    document_date: Optional[str] = "2024-03-10",
    year: Optional[int] = 2024,
    month: Optional[int] = 3,
    category: Optional[str] = "COMBUSTÍVEIS E LUBRIFICANTES.",
    document_id: Optional[Any] = 1,
    gross: Optional[float] = None,
) -> Dict[str, Any]:
    """One expense line as returned by /deputados/{id}/despesas."""
    return {
        "ano": year,
        "mes": month,
        "tipoDespesa": category,
        "codDocumento": document_id,
        "tipoDocumento": "Nota Fiscal",
        "dataDocumento": document_date,
        "numDocumento": f"NF-{document_id}",
        "valorDocumento": gross if gross is not None else amount,
        "urlDocumento": None,
        "nomeFornecedor": supplier_name,
        "cnpjCpfFornecedor": supplier,
        "valorLiquido": amount,
        "valorGlosa": 0.0,
        "codLote": 1,
        "parcela": 0,
    }


def deputy_item(
    subject_id: int, name: str, party: str = "PXX", uf: str = "SP"
) -> Dict[str, Any]:
    return {
        "id": subject_id,
        "nome": name,
        "siglaPartido": party,
        "siglaUf": uf,
        "idLegislatura": 57,
        "urlFoto": f"https://example.test/{subject_id}.jpg",
        "email": None,
    }


def paged(pages: List[List[Any]]) -> Callable[[Any, Any], Dict[str, Any]]:
    """requests_mock callback serving ``pages`` by the ``pagina`` param."""

    def callback(request: Any, context: Any) -> Dict[str, Any]:
        page = int(request.qs.get("pagina", ["1"])[0])
        data = pages[page - 1] if page <= len(pages) else []
        return {"dados": data, "links": []}

    return callback
