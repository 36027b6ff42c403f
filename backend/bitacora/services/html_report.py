from datetime import date, datetime
from html import escape
from typing import Any

CHAPTER_TYPE_LABELS = {
    "letter": "Carta",
    "yearly_reflection": "Reflexión anual",
    "milestone_story": "Historia de un hito",
    "lesson_learned": "Lección aprendida",
    "family_story": "Historia familiar",
    "financial_education": "Educación financiera",
    "future_message": "Mensaje al futuro",
    "memory": "Recuerdo",
    "wish": "Deseo",
}

MILESTONE_LABELS = {
    "first_investment": "Primera inversión",
    "birthday": "Cumpleaños",
    "christmas": "Navidad",
    "achievement": "Logro",
    "family_moment": "Momento familiar",
    "monthly": "Aporte mensual",
    "bonus": "Bonificación",
    "gift": "Regalo",
    "special": "Momento especial",
}

TRANSACTION_TYPE_LABELS = {
    "buy": "Compra",
    "sell": "Venta",
    "dividend": "Dividendo",
    "transfer": "Transferencia",
    "split": "Split",
}

STYLE = """
body { font-family: Georgia, serif; background: #fdfaf3; color: #2d2a24; margin: 0; }
.container { max-width: 860px; margin: 0 auto; padding: 24px; }
.nav { display: flex; gap: 16px; padding: 12px 0; border-bottom: 1px solid #d8cfbd; }
.nav a { color: #6b4f2a; text-decoration: none; }
.header { text-align: center; padding: 32px 0; }
.section { margin: 40px 0; }
.chapter, .narrative, .moment { background: #fff; border: 1px solid #e6dcc8; border-radius: 8px; padding: 16px; margin: 16px 0; }
.chapter-type { font-size: 0.8em; text-transform: uppercase; color: #8a7350; }
.locked-chapter { background: #f3efe6; border: 1px dashed #c3b594; border-radius: 8px; padding: 12px; margin: 8px 0; }
.teaser { font-style: italic; }
.summary-cards { display: flex; gap: 12px; flex-wrap: wrap; }
.summary-card { background: #fff; border: 1px solid #e6dcc8; border-radius: 8px; padding: 12px; min-width: 160px; }
.card-label { display: block; font-size: 0.8em; color: #8a7350; }
.card-value { font-size: 1.2em; }
table { width: 100%; border-collapse: collapse; }
th, td { text-align: left; padding: 6px; border-bottom: 1px solid #eee3cf; }
.empty-message { color: #8a7350; font-style: italic; }
.footer { font-size: 0.8em; color: #8a7350; border-top: 1px solid #d8cfbd; padding-top: 12px; margin-top: 48px; }
@media print { .nav { display: none; } }
"""


def _text(value: Any) -> str:
    return escape(str(value)) if value is not None else ""


def _date(value: Any) -> str:
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d")
    if isinstance(value, date):
        return value.isoformat()
    return _text(value)


def _money(value: Any) -> str:
    return f"$ {float(value or 0):,.2f}"


def _paragraphs(text: str | None) -> str:
    if not text:
        return ""
    return "".join(f"<p>{_text(block)}</p>" for block in text.split("\n\n") if block.strip())


def _list(items: list[str] | None) -> str:
    if not items:
        return ""
    return "<ul>" + "".join(f"<li>{_text(item)}</li>" for item in items) + "</ul>"


def _chapters_section(emotional: dict[str, Any] | None) -> str:
    chapters = (emotional or {}).get("chapters", [])
    if not chapters:
        return '<section id="capitulos" class="section"><h2>Capítulos</h2><p class="empty-message">Aún no hay capítulos escritos.</p></section>'
    parts = ['<section id="capitulos" class="section"><h2>Capítulos</h2>']
    unlocked = [chapter for chapter in chapters if not chapter.get("is_locked")]
    locked = [chapter for chapter in chapters if chapter.get("is_locked")]
    for chapter in unlocked:
        parts.append(
            '<article class="chapter">'
            f'<span class="chapter-type">{_text(CHAPTER_TYPE_LABELS.get(chapter.get("type"), chapter.get("type")))}</span>'
            f'<h3>{_text(chapter.get("title"))}</h3>'
            f'<div class="chapter-content">{_paragraphs(chapter.get("content"))}</div>'
            "</article>"
        )
    if locked:
        parts.append('<div class="locked-section"><h3>Capítulos por descubrir</h3>')
        for chapter in locked:
            gate = ""
            if chapter.get("unlock_date"):
                gate = f"Se abre el {_date(chapter['unlock_date'])}"
            elif chapter.get("unlock_age") is not None:
                gate = f"Se abre a los {_text(chapter['unlock_age'])} años"
            teaser = f'<p class="teaser">"{_text(chapter["locked_teaser"])}"</p>' if chapter.get("locked_teaser") else ""
            parts.append(
                '<div class="locked-chapter">'
                f'<h4>{_text(chapter.get("title"))}</h4><p>{gate}</p>{teaser}'
                "</div>"
            )
        parts.append("</div>")
    parts.append("</section>")
    return "".join(parts)


def _narratives_section(emotional: dict[str, Any] | None) -> str:
    narratives = (emotional or {}).get("yearlyNarratives", [])
    if not narratives:
        return '<section id="narrativas" class="section"><h2>Reflexiones anuales</h2><p class="empty-message">Aún no hay reflexiones anuales.</p></section>'
    parts = ['<section id="narrativas" class="section"><h2>Reflexiones anuales</h2>']
    for narrative in sorted(narratives, key=lambda row: row.get("year", 0)):
        age = narrative.get("child_age_at_year")
        parts.append(
            '<article class="narrative">'
            f'<h3>Año {_text(narrative.get("year"))}</h3>'
            + (f'<p class="child-age">Tenías {_text(age)} año(s)</p>' if age is not None else "")
            + f"<h4>Resumen</h4>{_paragraphs(narrative.get('summary'))}"
            + (f"<h4>Momentos destacados</h4>{_list(narrative.get('highlights'))}" if narrative.get("highlights") else "")
            + (f"<h4>Lo que decidimos</h4>{_paragraphs(narrative.get('what_we_decided'))}" if narrative.get("what_we_decided") else "")
            + (f"<h4>Lo que aprendimos</h4>{_paragraphs(narrative.get('what_we_learned'))}" if narrative.get("what_we_learned") else "")
            + (f"<h4>Agradecimientos</h4>{_paragraphs(narrative.get('gratitude'))}" if narrative.get("gratitude") else "")
            + "</article>"
        )
    parts.append("</section>")
    return "".join(parts)


def _history_section(financial: dict[str, Any] | None) -> str:
    if not financial:
        return '<section id="historial" class="section"><h2>Historial financiero</h2><p class="empty-message">Datos financieros no incluidos.</p></section>'
    summary = financial.get("summary") or {}
    rows = "".join(
        "<tr>"
        f"<td>{_date(row.get('date'))}</td>"
        f"<td>{_text(TRANSACTION_TYPE_LABELS.get(row.get('type'), row.get('type')))}</td>"
        f"<td>{_text(row.get('ticker'))}</td>"
        f"<td>{_text(row.get('units'))}</td>"
        f"<td>{_money(row.get('total_amount'))}</td>"
        "</tr>"
        for row in financial.get("transactions", [])
    )
    return (
        '<section id="historial" class="section"><h2>Historial financiero</h2>'
        '<div class="summary-cards">'
        f'<div class="summary-card"><span class="card-label">Total invertido</span><span class="card-value">{_money(summary.get("total_invested"))}</span></div>'
        f'<div class="summary-card"><span class="card-label">Valor actual</span><span class="card-value">{_money(summary.get("current_value"))}</span></div>'
        f'<div class="summary-card"><span class="card-label">Rentabilidad</span><span class="card-value">{float(summary.get("total_return_percentage") or 0):.2f}%</span></div>'
        "</div>"
        "<table><thead><tr><th>Fecha</th><th>Tipo</th><th>Instrumento</th><th>Unidades</th><th>Monto</th></tr></thead>"
        f"<tbody>{rows}</tbody></table></section>"
    )


def _moments_section(metadata: dict[str, Any] | None) -> str:
    moments = [row for row in (metadata or {}).get("transactionMetadata", []) if row.get("milestone") or row.get("reason")]
    if not moments:
        return '<section id="momentos" class="section"><h2>Momentos especiales</h2><p class="empty-message">Aún no hay momentos registrados.</p></section>'
    parts = ['<section id="momentos" class="section"><h2>Momentos especiales</h2>']
    for row in moments:
        label = MILESTONE_LABELS.get(row.get("milestone"), "Decisión")
        photo = ""
        if row.get("photo_url"):
            photo = f'<p><a href="{_text(row["photo_url"])}">{_text(row.get("photo_caption") or "Ver foto")}</a></p>'
        parts.append(
            '<div class="moment">'
            f"<h4>{_text(label)}</h4>{_paragraphs(row.get('reason'))}{_paragraphs(row.get('milestone_note'))}{photo}"
            "</div>"
        )
    parts.append("</section>")
    return "".join(parts)


def render_html(data: dict[str, Any]) -> str:
    child = data.get("childInfo") or {}
    name = _text(child.get("name"))
    checksums = data.get("checksums") or {}
    checksum_lines = "".join(f"<li>{_text(layer)}: <code>{_text(value)}</code></li>" for layer, value in checksums.items())
    return (
        "<!DOCTYPE html>"
        '<html lang="es"><head><meta charset="utf-8">'
        '<meta name="viewport" content="width=device-width, initial-scale=1">'
        f"<title>Bitácora Patrimonial de {name}</title><style>{STYLE}</style></head>"
        '<body><div class="container">'
        '<nav class="nav"><a href="#capitulos">Capítulos</a><a href="#narrativas">Reflexiones</a>'
        '<a href="#historial">Historial</a><a href="#momentos">Momentos</a></nav>'
        '<header class="header"><h1>Bitácora Patrimonial</h1>'
        f"<h2>La historia de {name}</h2>"
        f'<p class="subtitle">Exportado el {_date(data.get("exportDate"))}</p></header>'
        + _chapters_section(data.get("emotional"))
        + _narratives_section(data.get("emotional"))
        + _history_section(data.get("financial"))
        + _moments_section(data.get("metadata"))
        + '<footer class="footer">'
        f"<p>Versión de exportación {_text(data.get('exportVersion'))} · {_text(data.get('checksumAlgorithm'))}</p>"
        f"<ul>{checksum_lines}</ul></footer>"
        "</div></body></html>"
    )
