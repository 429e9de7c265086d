"""Boot the cartridge firmware and run it over a PostScript job."""

from __future__ import annotations

from dataclasses import dataclass

from . import cart_hooks, host_rom
from .bus import RAM_BASE, RAM_SIZE, ROM_SIZE, Bus
from .cart_hooks import Capture, Watchdog
from .cfg import Cfg
from .cpu import CpuCore, StepKind
from .host_rom import HostRom
from .output import ListSink, Logger, NullLogger, PageSink

# Boot stack frame the reset entry expects:
# [sp0]=0, [sp0+4]=RAM top, [sp0+8]=engine struct, [sp0+12]=0.
BOOT_SP = 0x00FF_8000
ENGINE_STRUCT = RAM_BASE + 0x0020_0000
BOOT_PC = 0x0040_00A0
BOOT_SR = 0x2000

LOWMEM_TRAP_START = 0x100
LOWMEM_TRAP_END = 0x1000

# Watchdog budgets, in cart instructions.
NO_PAGE_PROGRESS_BUDGET = 500_000_000
POST_FATAL_ASSERT_BUDGET = 30_000_000


class RenderError(RuntimeError):
    """Raised when the ROM is unusable or the CPU core cannot continue."""


@dataclass
class RenderResult:
    """Summary of one render; pages have already gone to the sink."""

    pages: int
    wedged: bool
    panicked: bool
    insns: int
    ram_snapshot: bytes | None = None


def _trunc_div(a: int, b: int) -> int:
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b > 0) else -q


def build_prolog(cfg: Cfg, log: Logger) -> bytes:
    """Build the PostScript the cart reads before the user's job.

    Always defines a paper-sized ``/clippath``; in LJ III mode also clips
    to the printable area, and with ``lpi`` set prepends a ``setscreen``.
    """
    parts: list[str] = []
    if cfg.lpi is not None:
        if not cfg.quiet:
            log.info(
                f"[emu] lpi {cfg.lpi} @ angle {cfg.screen_angle}: "
                "injecting setscreen prolog"
            )
        parts.append(
            f"{cfg.lpi} {cfg.screen_angle} "
            "{dup mul exch dup mul add 1 exch sub} setscreen "
        )
    pw = _trunc_div(cfg.paper_w_px * 72, cfg.paper_dpi)
    ph = _trunc_div(cfg.paper_h_px * 72, cfg.paper_dpi)
    if cfg.lj3:
        left, bottom, right, top = 18, 18, pw - 18, ph - 18
    else:
        left, bottom, right, top = 0, 0, pw, ph
    bbox = (
        f"newpath {left} {bottom} moveto {right} {bottom} lineto "
        f"{right} {top} lineto {left} {top} lineto closepath "
    )
    parts.append(f"/clippath {{ {bbox} }} bind def ")
    if cfg.lj3:
        clip = f"{bbox} clip newpath "
        parts.append(
            f"/setpagedevice {{ systemdict /setpagedevice get exec {clip} }} bind def "
            f"/initclip {{ systemdict /initclip get exec {clip} }} bind def {clip}"
        )
    return "".join(parts).encode("ascii")


def boot_cart(bus: Bus, cpu: CpuCore | None = None) -> CpuCore:
    """Lay down the boot stack frame and point the CPU at the reset entry."""
    ram_top = RAM_BASE + RAM_SIZE - 1
    bus.write_long(BOOT_SP, 0)
    bus.write_long(BOOT_SP + 4, ram_top)
    bus.write_long(BOOT_SP + 8, ENGINE_STRUCT)
    bus.write_long(BOOT_SP + 12, 0)

    if cpu is None:
        cpu = CpuCore()
    cpu.reset(bus)
    cpu.set_sr(BOOT_SR)
    cpu.pc = BOOT_PC
    cpu.set_sp(BOOT_SP)
    cpu.set_a(6, 0)
    return cpu


def render(
    rom: bytes,
    ps_input: bytes,
    cfg: Cfg,
    log: Logger | None = None,
    sink: PageSink | None = None,
    cpu: CpuCore | None = None,
) -> RenderResult:
    """Run the cart firmware over ``ps_input``, emitting pages to ``sink``.

    Raises :class:`RenderError` when the ROM has the wrong size or the CPU
    stops, meets an illegal instruction or an unhandled step.
    """
    if log is None:
        log = NullLogger()
    if sink is None:
        sink = ListSink()
    if len(rom) != ROM_SIZE:
        raise RenderError(f"ROM short read ({len(rom)} bytes, expected {ROM_SIZE})")

    def info(msg: str) -> None:
        if not cfg.quiet:
            log.info(f"[emu] {msg}")

    def info_at(insns: int, msg: str) -> None:
        if not cfg.quiet:
            log.info(f"[emu {insns:>10}] {msg}")

    info(f"loaded {len(ps_input)} bytes of PS input")
    prolog = build_prolog(cfg, log)

    bus = Bus(rom)
    host = HostRom(ps_input, cfg.exit_after, prolog)
    cap = Capture()
    wd = Watchdog()

    cpu = boot_cart(bus, cpu)
    host.init(bus)

    info(
        f"booting: PC=${BOOT_PC:06x} SP=${BOOT_SP:06x} "
        f"engine=${ENGINE_STRUCT:06x} max_insns={cfg.max_insns}"
    )

    insn_count = 0
    wedged_after: int | None = None
    last_page_at = 0
    last_page_count = 0
    while insn_count < cfg.max_insns:
        if wd.stop_requested or host.stop_requested:
            break
        if wd.stop_at_insn is not None and insn_count >= wd.stop_at_insn:
            info_at(insn_count, "aborting after PS-error grace window")
            break
        at = wd.fatal_assert_at
        if at is not None and insn_count > at + POST_FATAL_ASSERT_BUDGET:
            info_at(
                insn_count,
                f"no progress {(insn_count - at) // 1_000_000} M insns after "
                f"fatal_assert; aborting at page {cap.page_counter}",
            )
            wedged_after = at
            break
        if cap.page_counter != last_page_count:
            last_page_count = cap.page_counter
            last_page_at = insn_count
        if insn_count > last_page_at + NO_PAGE_PROGRESS_BUDGET:
            # Covers both a cart spinning between pages and one that never
            # produces a first page (usually unrecoverable PostScript).
            info_at(
                insn_count,
                f"no new page in {(insn_count - last_page_at) // 1_000_000} M insns "
                f"since page {cap.page_counter}; aborting",
            )
            wedged_after = last_page_at
            break

        pc = cpu.pc
        host.maybe_grow_pool_end(bus, insn_count)
        if LOWMEM_TRAP_START <= pc < LOWMEM_TRAP_END:
            host_rom.lowmem_trap(cpu, bus, host, log, pc)
        elif not host_rom.on_instr(cpu, bus, host, log, insn_count, pc, cap.page_counter):
            cart_hooks.on_instr(cpu, bus, host, cfg, cap, wd, log, sink, insn_count, pc)

        result = cpu.step(bus)
        kind = result.kind
        if kind is StepKind.OK:
            insn_count += 1
        elif kind is StepKind.STOPPED:
            raise RenderError(f"cpu stopped at pc=${cpu.pc:06x}")
        elif kind is StepKind.TRAP_INSTRUCTION:
            cpu.take_trap_exception(bus, result.trap_num)
            insn_count += 1
        elif kind is StepKind.ALINE_TRAP:
            cpu.take_aline_exception(bus)
            insn_count += 1
        elif kind is StepKind.FLINE_TRAP:
            cpu.take_fline_exception(bus)
            insn_count += 1
        elif kind is StepKind.ILLEGAL_INSTRUCTION:
            raise RenderError(f"illegal op=${result.opcode:04x} pc=${cpu.pc:06x}")
        else:
            raise RenderError(f"unhandled step: {result!r} pc=${cpu.pc:06x}")

    if wedged_after is not None:
        info(
            f"wedged at insn={insn_count} after fatal_assert at insn={wedged_after}; "
            f"pages={cap.page_counter}"
        )
    else:
        info(f"done. insns={insn_count} pages={cap.page_counter}")

    return RenderResult(
        pages=cap.page_counter,
        wedged=wedged_after is not None,
        panicked=host.panic_fired,
        insns=insn_count,
        ram_snapshot=wd.ram_snapshot,
    )