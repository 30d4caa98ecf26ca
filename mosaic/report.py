from __future__ import annotations

"""
Run report: what happened to each of the nine tiles, plus the centering
result. Persisted as a human-readable text report (with a CSV grid section)
and a JSON manifest next to the mosaic PNG.
"""

import csv
import io
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from common.types import SkyPosition, TileGrid
from common.utils import iso_now_ms


@dataclass
class RunReport:
    target: Optional[SkyPosition] = None
    order: Optional[int] = None
    survey: str = ""
    arcsec_per_pixel: Optional[float] = None
    started_at: str = field(default_factory=iso_now_ms)
    finished_at: Optional[str] = None
    state: str = "idle"
    center_pixel: Optional[int] = None
    cells: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None
    raw_target_px: Optional[Tuple[int, int]] = None
    crop_origin: Optional[Tuple[int, int]] = None
    output_size: Optional[int] = None
    tiles_used: int = 0
    timings_ms: Dict[str, int] = field(default_factory=dict)

    def warn(self, msg: str) -> None:
        self.warnings.append(msg)

    def snapshot_grid(self, grid: TileGrid) -> None:
        self.cells = grid.to_meta()

    @property
    def failed_cells(self) -> List[Dict[str, Any]]:
        return [c for c in self.cells if c.get("source") == "failed"]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target.to_dict() if self.target else None,
            "order": self.order,
            "survey": self.survey,
            "arcsec_per_pixel": self.arcsec_per_pixel,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "state": self.state,
            "center_pixel": self.center_pixel,
            "tiles_used": self.tiles_used,
            "raw_target_px": list(self.raw_target_px) if self.raw_target_px else None,
            "crop_origin": list(self.crop_origin) if self.crop_origin else None,
            "output_size": self.output_size,
            "timings_ms": dict(self.timings_ms),
            "warnings": list(self.warnings),
            "error": self.error,
            "cells": list(self.cells),
        }


_CSV_COLUMNS = (
    "Grid_X", "Grid_Y", "HEALPix_Pixel", "Direction", "Tile_RA", "Tile_Dec",
    "Fallback", "Source", "Downloaded", "ImageSize", "Bytes", "Error", "URL",
)


def grid_csv(report: RunReport) -> str:
    buf = io.StringIO()
    w = csv.writer(buf, lineterminator="\n")
    w.writerow(_CSV_COLUMNS)
    for c in report.cells:
        size = c.get("image_size")
        w.writerow([
            c["grid_x"], c["grid_y"], c["pixel"], c["direction"],
            f"{c['ra_deg']:.6f}", f"{c['dec_deg']:.6f}",
            "YES" if c["is_edge_fallback"] else "NO",
            c["source"],
            "YES" if c["downloaded"] else "NO",
            f"{size[0]}x{size[1]}" if size else "0x0",
            c["bytes"],
            c.get("error") or "",
            c["url"],
        ])
    return buf.getvalue()


def render_text(report: RunReport) -> str:
    t = report.target
    name = t.name if t and t.name else "Custom Target"
    lines = [
        f"{name} Coordinate-Centered Mosaic Report",
        f"Generated: {report.finished_at or iso_now_ms()}",
        "",
        "COORDINATE CENTERING:",
    ]
    if t:
        lines.append(f"Target coordinates: RA {t.ra_deg:.6f} deg, Dec {t.dec_deg:.6f} deg")
        if t.description:
            lines.append(f"Description: {t.description}")
    lines += [
        f"Survey: {report.survey}  Order: {report.order}  Center pixel: {report.center_pixel}",
        f"Pixel scale: {report.arcsec_per_pixel:.4f} arcsec/px" if report.arcsec_per_pixel else "Pixel scale: n/a",
        f"State: {report.state}",
        f"Tiles used: {report.tiles_used}/9",
    ]
    if report.raw_target_px:
        lines.append(f"Target pixel in raw mosaic: ({report.raw_target_px[0]},{report.raw_target_px[1]})")
    if report.crop_origin is not None and report.output_size:
        lines.append(f"Crop: origin ({report.crop_origin[0]},{report.crop_origin[1]}) size {report.output_size}x{report.output_size}")
    if report.error:
        lines.append(f"Error: {report.error}")
    if report.warnings:
        lines += ["", "Warnings:"] + [f"  - {w}" for w in report.warnings]
    lines += ["", "3x3 Tile Grid Used:", grid_csv(report).rstrip("\n")]
    return "\n".join(lines) + "\n"


def write_report(report: RunReport, out_dir: str) -> Tuple[Path, Path]:
    """Write <name>_centered_report.txt and <name>_manifest.json; returns both paths."""
    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)
    stem = report.target.safe_name if report.target else "target"
    txt = out / f"{stem}_centered_report.txt"
    js = out / f"{stem}_manifest.json"
    txt.write_text(render_text(report), encoding="utf-8")
    js.write_text(json.dumps(report.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8")
    return txt, js
