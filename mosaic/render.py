from __future__ import annotations

from pathlib import Path
from typing import Tuple

import cv2
import numpy as np

from common.types import CenteredMosaic


CROSSHAIR_BGR: Tuple[int, int, int] = (0, 255, 255)  # yellow
CROSSHAIR_HALF = 30
CROSSHAIR_THICKNESS = 3


def annotate(mosaic: CenteredMosaic) -> np.ndarray:
    """Copy of the mosaic with a crosshair on the target and name/coordinate labels."""
    out = mosaic.image.copy()
    if out.ndim == 2:
        out = cv2.cvtColor(out, cv2.COLOR_GRAY2BGR)
    x, y = mosaic.target_px
    h = CROSSHAIR_HALF
    cv2.line(out, (x - h, y), (x + h, y), CROSSHAIR_BGR, CROSSHAIR_THICKNESS, cv2.LINE_AA)
    cv2.line(out, (x, y - h), (x, y + h), CROSSHAIR_BGR, CROSSHAIR_THICKNESS, cv2.LINE_AA)

    t = mosaic.target
    labels = [
        t.name or "Custom Target",
        f"RA:{t.ra_deg:.4f} Dec:{t.dec_deg:.4f}",
        "COORDINATE CENTERED",
    ]
    for i, text in enumerate(labels):
        org = (12, 32 + 30 * i)
        cv2.putText(out, text, org, cv2.FONT_HERSHEY_SIMPLEX, 0.8, (0, 0, 0), 4, cv2.LINE_AA)
        cv2.putText(out, text, org, cv2.FONT_HERSHEY_SIMPLEX, 0.8, CROSSHAIR_BGR, 2, cv2.LINE_AA)
    return out


def encode_png(img: np.ndarray) -> bytes:
    ok, buf = cv2.imencode(".png", img)
    if not ok:
        raise RuntimeError("PNG encoding failed")
    return buf.tobytes()


def save_mosaic(mosaic: CenteredMosaic, out_dir: str, *, annotated: bool = True) -> Path:
    """Write <name>_centered_mosaic.png under out_dir and return its path."""
    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)
    path = out / f"{mosaic.target.safe_name}_centered_mosaic.png"
    img = annotate(mosaic) if annotated else mosaic.image
    path.write_bytes(encode_png(img))
    return path
