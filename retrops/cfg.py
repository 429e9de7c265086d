"""Validated runtime configuration for the cartridge emulator."""

from __future__ import annotations

from dataclasses import dataclass

U64_MAX = 2**64 - 1
CART_PX_LIMIT = 31999
AXIS_PX_LIMIT = 16000


class ConfigError(ValueError):
    """Raised when user-facing inputs cannot form a valid configuration."""


def _trunc_div(a: int, b: int) -> int:
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b > 0) else -q


def _as_u32(value: int) -> int:
    return value & 0xFFFF_FFFF


def _as_i32(value: int) -> int:
    value &= 0xFFFF_FFFF
    return value - 0x1_0000_0000 if value & 0x8000_0000 else value


@dataclass
class CfgInputs:
    """Raw inputs: paper size in points or pixels, DPI and mode flags."""

    paper_w: int | None = None
    paper_h: int | None = None
    paper_dpi: int | None = None
    paper_w_px: int | None = None
    paper_h_px: int | None = None
    lj3: bool = False
    max_insns: int | None = None
    quiet: bool = False
    ram_snapshot: bool = False
    ram_snapshot_force: bool = False
    exit_after: int | None = None
    lpi: int | None = None
    screen_angle: int | None = None


@dataclass(frozen=True)
class Cfg:
    """Resolved configuration consumed by the emulator."""

    max_insns: int
    quiet: bool
    paper_w_px: int
    paper_h_px: int
    paper_dpi: int
    lj3: bool
    ram_snapshot: bool
    ram_snapshot_force: bool
    exit_after: int | None
    lpi: int | None
    screen_angle: int

    @classmethod
    def from_inputs(cls, inputs: CfgInputs) -> "Cfg":
        """Validate ``inputs`` and derive pixel dimensions.

        Explicit pixel dimensions win; otherwise they derive from the
        paper size in points at the requested DPI.
        """
        if inputs.lj3 and (
            inputs.paper_w is not None
            or inputs.paper_h is not None
            or inputs.paper_dpi is not None
        ):
            raise ConfigError(
                "--lj3 forces paper=612x792 and dpi=300; "
                "don't combine with --paper-w/-h/--paper-dpi"
            )
        paper_w = 612 if inputs.paper_w is None else inputs.paper_w
        paper_h = 792 if inputs.paper_h is None else inputs.paper_h
        dpi = 300 if inputs.paper_dpi is None else inputs.paper_dpi

        paper_w_px = (
            inputs.paper_w_px
            if inputs.paper_w_px is not None
            else _as_u32(_trunc_div(paper_w * dpi + 71, 72))
        )
        paper_h_px = (
            inputs.paper_h_px
            if inputs.paper_h_px is not None
            else _as_u32(_trunc_div(paper_h * dpi + 71, 72))
        )
        if paper_w_px > CART_PX_LIMIT or paper_h_px > CART_PX_LIMIT:
            raise ConfigError(
                f"page exceeds cart 31999 px limit "
                f"(W_px={paper_w_px} H_px={paper_h_px})"
            )
        if paper_w_px > AXIS_PX_LIMIT or paper_h_px > AXIS_PX_LIMIT:
            raise ConfigError(
                f"page {paper_w_px}x{paper_h_px} px exceeds the 16000 px per-axis "
                "limit. Lower paper_dpi or paper_w/-h, or render smaller and "
                "post-upscale."
            )

        return cls(
            max_insns=U64_MAX if inputs.max_insns is None else inputs.max_insns,
            quiet=inputs.quiet,
            paper_w_px=paper_w_px,
            paper_h_px=paper_h_px,
            paper_dpi=_as_i32(dpi),
            lj3=inputs.lj3,
            ram_snapshot=inputs.ram_snapshot,
            ram_snapshot_force=inputs.ram_snapshot_force,
            exit_after=inputs.exit_after,
            lpi=inputs.lpi,
            screen_angle=0 if inputs.screen_angle is None else inputs.screen_angle,
        )