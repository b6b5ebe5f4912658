from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import List, Optional

import numpy as np
import pandas as pd

from spectro_cam.engine.errors import DataError
from spectro_cam.engine.io_common import sniff_locale
from spectro_cam.engine.reference import ReferenceKind
from spectro_cam.engine.spectrum import AbsorbanceSpectrum, Spectrum, build_spectrum, channel_names

logger = logging.getLogger(__name__)

WAVELENGTH_COLUMN = "wavelength"


def export_spectrum(path: str | Path, spectrum: Spectrum) -> Path:
    """Write ``wavelength`` plus one column per channel."""

    path = Path(path)
    columns = [WAVELENGTH_COLUMN] + list(spectrum.channels)
    df = pd.DataFrame(list(spectrum.rows()), columns=columns)
    df.to_csv(path, index=False)
    logger.info("Exported %d samples to %s", len(df), path)
    return path


def export_absorbance(path: str | Path, absorbance: AbsorbanceSpectrum) -> Path:
    """Write absorbance with one column per channel; undefined samples are empty."""

    path = Path(path)
    if absorbance.traces:
        first = absorbance.traces[0]
        axis = np.sort(np.concatenate([first.wavelength, first.undefined]), kind="stable")
    else:
        axis = np.empty(0, dtype=float)
    data = {WAVELENGTH_COLUMN: axis}
    for trace in absorbance.traces:
        column = np.full(axis.size, np.nan)
        if trace.wavelength.size:
            column[np.searchsorted(axis, trace.wavelength)] = trace.absorbance
        data[trace.channel] = column
    df = pd.DataFrame(data)
    df.to_csv(path, index=False)
    logger.info("Exported absorbance for %d channels to %s", len(absorbance.traces), path)
    return path


def _has_header(first_row: List[str], decimal: str) -> bool:
    text = str(first_row[0]).strip()
    if decimal != ".":
        text = text.replace(decimal, ".")
    try:
        float(text)
    except ValueError:
        return True
    return False


def read_spectrum_csv(path: str | Path) -> Spectrum:
    """Parse a wavelength column followed by one or more intensity columns."""

    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8", errors="ignore")
    except OSError as exc:
        raise DataError(f"Could not read {path}: {exc}") from exc
    lines = [ln for ln in text.splitlines() if ln.strip() and not ln.lstrip().startswith("#")]
    if not lines:
        raise DataError(f"{path.name} contains no data")

    locale = sniff_locale("\n".join(lines[:50]))
    first_row = lines[0].split(locale["delimiter"])
    header = _has_header(first_row, locale["decimal"])
    try:
        df = pd.read_csv(
            io.StringIO("\n".join(lines)),
            sep=locale["delimiter"],
            decimal=locale["decimal"],
            engine="python",
            header=0 if header else None,
        )
    except (pd.errors.ParserError, ValueError) as exc:
        raise DataError(f"Could not parse {path.name}: {exc}") from exc

    if df.shape[1] < 2:
        raise DataError(f"{path.name} must contain a wavelength and at least one intensity column")

    numeric = df.apply(pd.to_numeric, errors="coerce").dropna(how="any")
    if numeric.empty:
        raise DataError(f"{path.name} has no numeric rows")
    dropped = len(df) - len(numeric)
    if dropped:
        logger.warning("Skipped %d non-numeric rows in %s", dropped, path.name)

    names: Optional[tuple] = None
    if header:
        names = tuple(str(col).strip() for col in df.columns[1:])
    wavelength = numeric.iloc[:, 0].to_numpy(dtype=float)
    intensity = numeric.iloc[:, 1:].to_numpy(dtype=float).T
    return build_spectrum(
        wavelength,
        intensity,
        names or channel_names(intensity.shape[0]),
        meta={"source": str(path)},
    )


def import_reference(path: str | Path) -> Spectrum:
    """Load a reference spectrum; raises ``DataError`` for unusable files."""

    spectrum = read_spectrum_csv(path)
    if not np.any(spectrum.intensity > 0):
        raise DataError(f"{Path(path).name} has no positive intensities")
    meta = dict(spectrum.meta)
    meta["reference_kind"] = ReferenceKind.IMPORTED.value
    return spectrum.copy(meta=meta)
