from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Iterable, Tuple, TypeVar

from .errors import ConfigurationError, InvalidSlotError

S = TypeVar("S")


@dataclass(frozen=True)
class Rect:
    x: int
    y: int
    w: int
    h: int


@dataclass(frozen=True)
class Placement(Generic[S]):
    slot: int
    source: S
    rect: Rect


@dataclass(frozen=True)
class ResolvedLayout(Generic[S]):
    rows: int
    cols: int
    width: int
    height: int
    cell_width: int
    cell_height: int
    placements: Tuple[Placement[S], ...]

    @property
    def total_slots(self) -> int:
        return self.rows * self.cols

    @property
    def empty_slots(self) -> Tuple[int, ...]:
        used = {p.slot for p in self.placements}
        return tuple(s for s in range(self.total_slots) if s not in used)


def cell_rect(slot: int, cols: int, cell_w: int, cell_h: int) -> Rect:
    r = slot // cols
    c = slot % cols
    return Rect(x=c * cell_w, y=r * cell_h, w=cell_w, h=cell_h)


def resolve_layout(
    rows: int,
    cols: int,
    width: int,
    height: int,
    assignments: Iterable[Tuple[int, S]],
) -> ResolvedLayout[S]:
    """Place every (slot, source) pair on a rows x cols grid over a width x height canvas.

    Cells are floor(width/cols) x floor(height/rows); any remainder strip on the
    right or bottom edge is left to the composition background, as are unmapped
    slots. Placements come back ordered by slot.
    """
    if rows < 1 or cols < 1:
        raise ConfigurationError(f"grid must be at least 1x1, got {rows}x{cols}", phase="resolve")
    if width <= 0 or height <= 0:
        raise ConfigurationError(f"canvas must be positive, got {width}x{height}", phase="resolve")
    cell_w = width // cols
    cell_h = height // rows
    if cell_w == 0 or cell_h == 0:
        raise ConfigurationError(
            f"canvas {width}x{height} is too small for a {rows}x{cols} grid", phase="resolve"
        )

    total = rows * cols
    by_slot: dict[int, S] = {}
    for slot, source in assignments:
        if not 0 <= slot < total:
            raise InvalidSlotError(
                f"slot {slot} is outside the {rows}x{cols} grid (0..{total - 1})", phase="resolve"
            )
        if slot in by_slot:
            raise ConfigurationError(f"slot {slot} is mapped more than once", phase="resolve")
        by_slot[slot] = source

    placements = tuple(
        Placement(slot=slot, source=by_slot[slot], rect=cell_rect(slot, cols, cell_w, cell_h))
        for slot in sorted(by_slot)
    )
    return ResolvedLayout(
        rows=rows,
        cols=cols,
        width=width,
        height=height,
        cell_width=cell_w,
        cell_height=cell_h,
        placements=placements,
    )
