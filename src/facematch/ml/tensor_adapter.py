"""Tensor layout adaptation between preprocessing and an inference engine.

Preprocessing always yields a flat float buffer in RGB interleaved order,
already scaled as ``(pixel - mean) / std``. Embedding models differ in how
they declare their input: channel-last or channel-first, with or without a
batch axis, float or 8-bit unsigned input. This module maps the flat buffer
onto whatever the engine declares and turns the engine output back into a
flat ``float64`` embedding.
"""

from __future__ import annotations

import math
from enum import StrEnum
from typing import TYPE_CHECKING

import numpy as np

from facematch.errors import (
    NotAnEmbeddingOutputError,
    UnsupportedInputShapeError,
    UnsupportedOutputRankError,
    UnsupportedTensorKindError,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import ArrayLike, NDArray

CHANNELS = 3
DEFAULT_MEAN = 127.5
DEFAULT_STD = 128.0


class TensorKind(StrEnum):
    """Element kinds an embedding model may declare for its tensors."""

    UINT8 = "uint8"
    FLOAT32 = "float32"

    @property
    def dtype(self) -> type[np.generic]:
        return np.uint8 if self is TensorKind.UINT8 else np.float32

    @classmethod
    def parse(cls, value: object) -> TensorKind:
        """Map an engine's element-type name onto a ``TensorKind``.

        Accepts the enum itself, plain names and ONNX type strings such as
        ``tensor(float)``.

        Raises:
            UnsupportedTensorKindError: For any other element kind.
        """
        if isinstance(value, TensorKind):
            return value
        kind = _KIND_ALIASES.get(str(value).strip().lower())
        if kind is None:
            raise UnsupportedTensorKindError(value)
        return kind


_KIND_ALIASES: dict[str, TensorKind] = {
    "uint8": TensorKind.UINT8,
    "tensor(uint8)": TensorKind.UINT8,
    "float32": TensorKind.FLOAT32,
    "float": TensorKind.FLOAT32,
    "tensor(float)": TensorKind.FLOAT32,
}


class Layout(StrEnum):
    FLAT = "flat"
    CHANNEL_LAST = "channel_last"
    CHANNEL_FIRST = "channel_first"


def detect_layout(shape: Sequence[int]) -> Layout:
    """Pick the input layout by locating the channel axis (size 3).

    Channel-last wins when both candidate axes equal 3.
    """
    dims = tuple(shape)
    if len(dims) == 1:
        return Layout.FLAT
    if len(dims) == 4:
        if dims[3] == CHANNELS:
            return Layout.CHANNEL_LAST
        if dims[1] == CHANNELS:
            return Layout.CHANNEL_FIRST
    elif len(dims) == 3:
        if dims[2] == CHANNELS:
            return Layout.CHANNEL_LAST
        if dims[0] == CHANNELS:
            return Layout.CHANNEL_FIRST
    raise UnsupportedInputShapeError(dims)


def spatial_size(shape: Sequence[int]) -> int | None:
    """Return the height axis of an image-shaped input, or None for flat inputs."""
    dims = tuple(shape)
    layout = detect_layout(dims)
    if layout is Layout.FLAT:
        return None
    if layout is Layout.CHANNEL_LAST:
        return dims[-3]
    return dims[-2]


def denormalize(values: NDArray[np.float64], mean: float = DEFAULT_MEAN, std: float = DEFAULT_STD) -> NDArray[np.uint8]:
    """Undo ``(pixel - mean) / std`` scaling, rounding half away from zero into [0, 255]."""
    scaled = values * std + mean
    rounded = np.sign(scaled) * np.floor(np.abs(scaled) + 0.5)
    return np.clip(rounded, 0, 255).astype(np.uint8)


def shape_input(
    flat_data: ArrayLike,
    declared_shape: Sequence[int],
    declared_kind: object,
    *,
    mean: float = DEFAULT_MEAN,
    std: float = DEFAULT_STD,
) -> NDArray[np.generic]:
    """Lay a flat preprocessed buffer out in the engine's declared input shape.

    Element ``[b, h, w, c]`` of a channel-last tensor reads flat index
    ``((b*H + h)*W + w)*C + c``; element ``[b, c, h, w]`` of a channel-first
    tensor reads ``((b*C + c)*H + h)*W + w``. 3-D shapes drop the batch term.
    Indices past the end of ``flat_data`` read as zero, so a slightly short
    buffer still produces a tensor.

    Raises:
        UnsupportedTensorKindError: ``declared_kind`` is neither uint8 nor float32.
        UnsupportedInputShapeError: The shape is not 1-D, or a 3-D/4-D shape has no channel axis.
    """
    kind = TensorKind.parse(declared_kind)
    dims = tuple(int(d) for d in declared_shape)
    detect_layout(dims)

    source = np.asarray(flat_data, dtype=np.float64).reshape(-1)
    if kind is TensorKind.UINT8:
        converted: NDArray[np.generic] = denormalize(source, mean, std)
    else:
        converted = source.astype(np.float32)

    total = math.prod(dims)
    tensor = np.zeros(total, dtype=kind.dtype)
    count = min(total, converted.size)
    tensor[:count] = converted[:count]
    # Both index mappings above are row-major orders of the declared shape.
    return tensor.reshape(dims)


def make_output_buffer(declared_shape: Sequence[int], declared_kind: object) -> NDArray[np.generic]:
    """Allocate a zero-filled rank 1 or rank 2 buffer for the engine output.

    Raises:
        UnsupportedOutputRankError: For any other rank.
        UnsupportedTensorKindError: For an unknown element kind.
    """
    dims = tuple(int(d) for d in declared_shape)
    if len(dims) not in (1, 2):
        raise UnsupportedOutputRankError(dims)
    kind = TensorKind.parse(declared_kind)
    return np.zeros(dims, dtype=kind.dtype)


def flatten_output(tensor: ArrayLike, declared_shape: Sequence[int]) -> NDArray[np.float64]:
    """Turn a rank 1, ``[1, E]`` or ``[E, 1]`` output into a flat embedding.

    Raises:
        NotAnEmbeddingOutputError: For ``[N, M]`` outputs with both axes above 1.
        UnsupportedOutputRankError: For outputs of rank 3 or more.
    """
    dims = tuple(int(d) for d in declared_shape)
    values = np.asarray(tensor, dtype=np.float64)
    if len(dims) == 1:
        return values.reshape(-1)
    if len(dims) == 2:
        matrix = values.reshape(dims)
        if dims[0] == 1:
            return matrix[0].copy()
        if dims[1] == 1:
            return matrix[:, 0].copy()
        raise NotAnEmbeddingOutputError(dims)
    raise UnsupportedOutputRankError(dims)
