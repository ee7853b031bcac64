"""Dense matrix primitive used by the Kalman filter engine.

The engine never indexes tensors directly: every numeric operation goes through
the small contract implemented here (creation, resize, element access, products
with optional transposition, scaled sums, inversion, clearing and raw row-major
import/export).

All binary operations accept an ``out`` destination which may be one of the
operands. Results are always fully evaluated by torch into a new tensor before
being stored, so writing a product into one of its own factors is safe
(``P <- F @ P`` for instance).
"""

from __future__ import annotations

import enum
import logging
from typing import MutableSequence, Sequence, overload

import torch
import torch.linalg

logger = logging.getLogger(__name__)


class MatrixInit(enum.Enum):
    """Initial content of a newly created matrix."""

    ZERO = "zero"
    IDENTITY = "identity"


class Matrix:
    """Real-valued 2D matrix stored in a torch tensor.

    Attributes:
        data (torch.Tensor): Underlying storage. Never shared with another matrix.
            Shape: ``(rows, cols)``
    """

    def __init__(self, data: torch.Tensor) -> None:
        if data.dim() != 2:
            raise ValueError(f"A matrix requires a 2D tensor, got shape {tuple(data.shape)}")
        self.data = data

    @classmethod
    def create(
        cls,
        rows: int,
        cols: int,
        init=MatrixInit.ZERO,
        *,
        data: Sequence[float] | torch.Tensor | None = None,
        dtype=torch.float64,
        device: torch.device | None = None,
    ) -> Matrix:
        """Allocate a new matrix.

        Args:
            rows (int): Number of rows.
            cols (int): Number of columns.
            init (MatrixInit): Zero or identity initialization (identity is rectangular if rows != cols).
                Default: MatrixInit.ZERO
            data (Sequence[float] | torch.Tensor | None): Optional row-major values to import.
                Overrides ``init``.
            dtype (torch.dtype): Element type.
                Default: torch.float64
            device (torch.device | None): Storage device. Default device when None.

        Returns:
            Matrix: The allocated matrix
        """
        if init is MatrixInit.IDENTITY:
            matrix = cls(torch.eye(rows, cols, dtype=dtype, device=device))
        else:
            matrix = cls(torch.zeros(rows, cols, dtype=dtype, device=device))

        if data is not None:
            matrix.load(data)

        return matrix

    @property
    def rows(self) -> int:
        return self.data.shape[0]

    @property
    def cols(self) -> int:
        return self.data.shape[1]

    @property
    def shape(self) -> tuple[int, int]:
        return (self.rows, self.cols)

    @property
    def dtype(self) -> torch.dtype:
        return self.data.dtype

    @property
    def device(self) -> torch.device:
        return self.data.device

    @property
    def tensor(self) -> torch.Tensor:
        """Copy of the matrix content."""
        return self.data.clone()

    def clone(self) -> Matrix:
        return Matrix(self.data.clone())

    @overload
    def to(self, dtype: torch.dtype) -> Matrix: ...

    @overload
    def to(self, device: torch.device) -> Matrix: ...

    def to(self, fmt):
        """Convert the matrix to a specific device or dtype.

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the matrix to.

        Returns:
            Matrix: A new matrix with the right format (always a copy)
        """
        return Matrix(self.data.to(fmt, copy=True))

    def in_range(self, row: int, col: int) -> bool:
        """Check that (row, col) addresses an element. Negative indices are never valid."""
        return 0 <= row < self.rows and 0 <= col < self.cols

    def get(self, row: int, col: int) -> float | None:
        """Read one element, or None if out of range."""
        if not self.in_range(row, col):
            return None
        return self.data[row, col].item()

    def set(self, row: int, col: int, value: float) -> bool:
        """Write one element.

        Out-of-range indices are ignored.

        Returns:
            bool: True if the element was written.
        """
        if not self.in_range(row, col):
            logger.debug("Ignoring write at (%d, %d) in a %dx%d matrix", row, col, self.rows, self.cols)
            return False
        self.data[row, col] = value
        return True

    def resize(self, rows: int, cols: int) -> Matrix:
        """Change the matrix dimensions in place.

        The overlapping top-left block is preserved, new elements are zero.

        Returns:
            Matrix: self
        """
        if (rows, cols) != self.shape:
            data = torch.zeros(rows, cols, dtype=self.dtype, device=self.device)
            min_rows, min_cols = min(rows, self.rows), min(cols, self.cols)
            data[:min_rows, :min_cols] = self.data[:min_rows, :min_cols]
            self.data = data
        return self

    def clear(self) -> Matrix:
        """Set all elements to zero, keeping the dimensions."""
        self.data.zero_()
        return self

    def set_identity(self) -> Matrix:
        """Set the matrix to (rectangular) identity, keeping the dimensions."""
        self.data.copy_(torch.eye(self.rows, self.cols, dtype=self.dtype, device=self.device))
        return self

    def load(self, values: Sequence[float] | torch.Tensor) -> Matrix:
        """Import a row-major buffer of ``rows * cols`` elements.

        Raises:
            ValueError: If the buffer size does not match the matrix size.
        """
        flat = torch.as_tensor(values, dtype=self.dtype, device=self.device).reshape(-1)
        if flat.numel() != self.data.numel():
            raise ValueError(
                f"Expected {self.data.numel()} values for a {self.rows}x{self.cols} matrix, got {flat.numel()}"
            )
        self.data.copy_(flat.reshape(self.shape))
        return self

    def export(
        self, out: MutableSequence[float] | torch.Tensor | None = None
    ) -> MutableSequence[float] | torch.Tensor:
        """Export the elements as a row-major buffer.

        Args:
            out (MutableSequence[float] | torch.Tensor | None): Optional destination of exactly
                ``rows * cols`` elements. It is filled and returned.

        Returns:
            MutableSequence[float] | torch.Tensor: ``out`` if given, else a new 1D tensor.
                Shape: ``(rows * cols,)``
        """
        flat = self.data.reshape(-1).clone()
        if out is None:
            return flat

        if isinstance(out, torch.Tensor):
            if out.numel() != flat.numel():
                raise ValueError(f"Expected a buffer of {flat.numel()} elements, got {out.numel()}")
            out.copy_(flat.reshape(out.shape))
            return out

        if len(out) != flat.numel():
            raise ValueError(f"Expected a buffer of {flat.numel()} elements, got {len(out)}")
        out[:] = flat.tolist()
        return out

    def _store(self, result: torch.Tensor) -> Matrix:
        # The result is a fresh tensor, so aliasing with the operands is harmless.
        if result.shape == self.data.shape:
            self.data.copy_(result)
        else:
            self.data = result.to(self.dtype)
        return self

    @staticmethod
    def multiply(
        a: Matrix,
        b: Matrix,
        *,
        transpose_a=False,
        transpose_b=False,
        out: Matrix | None = None,
    ) -> Matrix:
        """Matrix product ``op(a) @ op(b)`` where op optionally transposes.

        Args:
            a (Matrix): Left operand.
            b (Matrix): Right operand.
            transpose_a (bool): Use aᵀ instead of a.
            transpose_b (bool): Use bᵀ instead of b.
            out (Matrix | None): Destination, possibly ``a`` or ``b``. Resized to the product shape.

        Returns:
            Matrix: ``out`` or a new matrix if not given
        """
        left = a.data.mT if transpose_a else a.data
        right = b.data.mT if transpose_b else b.data
        result = left @ right
        if out is None:
            return Matrix(result)
        return out._store(result)

    @staticmethod
    def add(a: Matrix, scale_a: float, b: Matrix, scale_b: float, *, out: Matrix | None = None) -> Matrix:
        """Scaled sum ``scale_a * a + scale_b * b``. ``out`` may alias ``a`` or ``b``."""
        result = scale_a * a.data + scale_b * b.data
        if out is None:
            return Matrix(result)
        return out._store(result)

    @staticmethod
    def invert(a: Matrix, *, out: Matrix | None = None) -> Matrix | None:
        """Invert a square matrix.

        Args:
            a (Matrix): Matrix to invert.
            out (Matrix | None): Destination, possibly ``a`` itself. Left untouched on failure.

        Returns:
            Matrix | None: The inverse (``out`` if given), or None if ``a`` is singular.

        Raises:
            ValueError: If ``a`` is not square.
        """
        if a.rows != a.cols:
            raise ValueError(f"Cannot invert a non square matrix ({a.rows}x{a.cols})")

        inverse, info = torch.linalg.inv_ex(a.data)
        if info.item() != 0 or not torch.isfinite(inverse).all():
            return None

        if out is None:
            return Matrix(inverse)
        return out._store(inverse)

    def __repr__(self) -> str:
        return f"Matrix({self.rows}x{self.cols}, {self.data})"
