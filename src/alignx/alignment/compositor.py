"""Render a source image onto a template canvas."""

from __future__ import annotations

from typing import TYPE_CHECKING

import cv2
import numpy as np

from alignx.alignment.errors import BufferAllocationError
from alignx.ml.preprocessing import parse_hex_color

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from alignx.alignment.templates import Template
    from alignx.alignment.transform import TransformMatrix


def allocate_canvas(template: Template, background_color: str) -> NDArray[np.uint8]:
    """Allocate a BGR buffer of the template's exact size, filled solid."""
    bgr = parse_hex_color(background_color)
    try:
        return np.full((template.height, template.width, 3), bgr, dtype=np.uint8)
    except MemoryError as exc:
        raise BufferAllocationError(
            f"Cannot allocate {template.width}x{template.height} canvas for {template.name}"
        ) from exc


def render(
    image: NDArray[np.uint8],
    transform: TransformMatrix,
    template: Template,
    background_color: str = "#F5F5F5",
) -> NDArray[np.uint8]:
    """Draw ``image`` under ``transform`` onto a fresh template canvas.

    The source eyes center lands on the template eye anchor. Source pixels
    falling outside the canvas are dropped; canvas pixels the source does not
    cover keep the background color. No cropping or letterboxing happens.
    """
    canvas = allocate_canvas(template, background_color)
    cv2.warpAffine(
        image,
        transform.to_affine(),
        (template.width, template.height),
        dst=canvas,
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_TRANSPARENT,
    )
    return canvas
