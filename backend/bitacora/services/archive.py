import io
import zipfile
from typing import Any

from ..codec import dumps
from .html_report import render_html

DATA_FILE = "data.json"
HTML_FILE = "index.html"
README_FILE = "README.txt"
MEDIA_MANIFEST = "media/_referencias.txt"


def collect_media_urls(data: dict[str, Any]) -> list[str]:
    urls: list[str] = []
    metadata = data.get("metadata") or {}
    for row in metadata.get("transactionMetadata", []):
        if row.get("photo_url"):
            urls.append(row["photo_url"])
    emotional = data.get("emotional") or {}
    for chapter in emotional.get("chapters", []):
        urls.extend(url for url in chapter.get("media_urls") or [] if url)
    for narrative in emotional.get("yearlyNarratives", []):
        urls.extend(url for url in narrative.get("year_photos") or [] if url)
    return list(dict.fromkeys(urls))


def generate_readme(data: dict[str, Any]) -> str:
    child = data.get("childInfo") or {}
    name = str(child.get("name") or "")
    checksums = data.get("checksums") or {}
    lines = [
        f"BITÁCORA PATRIMONIAL DE {name.upper()}",
        "=" * 40,
        "",
        f"Fecha de exportación: {data.get('exportDate')}",
        f"Versión de exportación: {data.get('exportVersion')}",
        f"Versión de la aplicación: {data.get('appVersion')}",
        "",
        "CONTENIDO",
        "---------",
        f"- {DATA_FILE}: todos los datos en formato JSON, importables de nuevo en la aplicación.",
        f"- {HTML_FILE}: versión para leer en cualquier navegador, sin conexión.",
        f"- {MEDIA_MANIFEST}: lista de fotos y archivos referenciados.",
        "",
        "CÓMO LEER ESTE ARCHIVO",
        "----------------------",
        f"Abre {HTML_FILE} con cualquier navegador web. No necesitas internet.",
        "",
        f"INTEGRIDAD ({data.get('checksumAlgorithm')})",
        "-----------",
    ]
    lines.extend(f"{layer}: {value}" for layer, value in checksums.items())
    lines.extend(["", "Con amor, para que conozcas tu historia."])
    return "\n".join(lines) + "\n"


def media_manifest(urls: list[str], include_media: bool) -> str:
    if not urls:
        return "No hay archivos multimedia referenciados.\n"
    lines = ["Archivos multimedia referenciados:", ""]
    lines.extend(f"{index}. {url}" for index, url in enumerate(urls, start=1))
    lines.append("")
    if include_media:
        lines.append("Los archivos se conservan en su ubicación original; descárgalos desde estas direcciones.")
    else:
        lines.append("Los archivos multimedia no fueron incluidos en esta exportación.")
    return "\n".join(lines) + "\n"


def build_zip(data: dict[str, Any], include_media: bool = False) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr(DATA_FILE, dumps(data, pretty=True))
        archive.writestr(HTML_FILE, render_html(data))
        archive.writestr(README_FILE, generate_readme(data))
        archive.writestr(MEDIA_MANIFEST, media_manifest(collect_media_urls(data), include_media))
    return buffer.getvalue()


def read_bundle(raw: bytes) -> str:
    """Returns the JSON text of an export, whether it arrives bare or inside a ZIP."""
    if zipfile.is_zipfile(io.BytesIO(raw)):
        with zipfile.ZipFile(io.BytesIO(raw)) as archive:
            if DATA_FILE not in archive.namelist():
                raise ValueError(f"archive has no {DATA_FILE}")
            return archive.read(DATA_FILE).decode("utf-8")
    return raw.decode("utf-8")
