"""PC-anchored hooks into the cart firmware: page capture, paper overrides, watchdog signals."""

from __future__ import annotations

import struct
from dataclasses import dataclass

from . import host_rom
from .bus import RAM_BASE, RAM_SIZE, Bus
from .cfg import Cfg
from .cpu import CpuCore, short_circuit_rts
from .host_rom import HostRom
from .output import CapturedPage, Logger, PageSink

FN_FATAL_ASSERT = 0x005F_2938
FN_PS_ALLOC = 0x005F_6D32
FN_PS_ALLOC_RTS = 0x005F_7042
FN_PS_OUT = 0x005E_D184
FN_SCAN_BUF_CTOR = 0x0059_8F08
FN_BITMAP_CFG = 0x0055_78B8
FN_SETPAGEDEV_ENTRY = 0x0054_5812
FN_SETPAGEDEV_POST_CORNER = 0x0054_58F2
FN_BAND_WRITE = 0x0053_2120
FN_SHOWPAGE_EMIT_RETURN = 0x0053_9B62

# Return address of the one allocation call that is redirected to a big buffer.
PS_ALLOC_HIDPI_CALLER = 0x0055_7A24

# Reached exactly when a PostScript error has longjmp'd back to the exec loop.
PC_PS_ERROR_RECOVERY = 0x005D_06A0
PS_ERROR_GRACE_INSNS = 5_000_000

PC_BAND_BUF_ALLOC_DONE = 0x0054_37FE
PC_ENGINE_DONE_LATCH = 0x0050_57C6
PC_PAGE_RING_RETIRE = 0x0054_4E0A

COMPOSITOR_DEFAULT_ARM = 0x0053_0FBA

SB_POOL_SIZE = 0x2C
SB_BAND_H = 0x30
SB_STRIDE = 0x34
SB_HEIGHT = 0x38
SB_NBANDS = 0x40

BC_STRIDE = 0x3C
BC_HEIGHT = 0x40

DEV_HEIGHT_PX = 0x20
DEV_MATRIX_A = 0x24
DEV_MATRIX_D = 0x30
DEV_MATRIX_TX = 0x34
DEV_MATRIX_TY = 0x38
DEV_SUB_STRUCT = 0x5C
SUB_MATRIX_A = 0x50
SUB_MATRIX_D = 0x5C
SUB_MATRIX_TX = 0x60
SUB_MATRIX_TY = 0x64

SCAN_SLOT_PTR = 0x24
PAGE_W_PX = 0x18
PAGE_H_PX = 0x20

HIDPI_BIGBUF = RAM_BASE + 0x0200_0000

RING_SLOT_BYTES = 0x44
RING_HIWATER = 0x10
SLOT_DIRTY_FIELDS = (0x00, 0x04, 0x10, 0x14, 0x18, 0x1C, 0x20, 0x30, 0x34, 0x38)

_M32 = 0xFFFF_FFFF


@dataclass
class Capture:
    """Per-page state gathered while the cart builds a page."""

    page_w: int = 0
    page_h: int = 0
    slot_ptr: int = 0
    page_counter: int = 0
    last_scan_buf_key: tuple[int, int, int, int] | None = None


@dataclass
class Watchdog:
    """Signals the run loop polls each instruction."""

    fatal_assert_at: int | None = None
    stop_requested: bool = False
    stop_at_insn: int | None = None
    ram_snapshot: bytes | None = None


def _div_ceil(a: int, b: int) -> int:
    return (a + b - 1) // b


def _f32_bits(value: float) -> int:
    return struct.unpack(">I", struct.pack(">f", value))[0]


def _f32(value: float) -> float:
    return struct.unpack(">f", struct.pack(">f", value))[0]


def _as_i32(value: int) -> int:
    value &= _M32
    return value - 0x1_0000_0000 if value & 0x8000_0000 else value


def _hex_list(data: bytes) -> str:
    return "[" + ", ".join(f"{b:02x}" for b in data) + "]"


def _info(cfg: Cfg, log: Logger, insns: int, msg: str) -> None:
    if not cfg.quiet:
        log.info(f"[emu {insns:>10}] {msg}")


def on_instr(
    cpu: CpuCore,
    bus: Bus,
    host: HostRom,
    cfg: Cfg,
    cap: Capture,
    wd: Watchdog,
    log: Logger,
    sink: PageSink,
    insns: int,
    pc: int,
) -> bool:
    """Dispatch the capture hooks for ``pc``; True when the call was short-circuited."""
    if pc == FN_FATAL_ASSERT:
        ret = bus.read_long(cpu.sp())
        log.fatal_assert(f"[emu {insns:>10}] fatal_assert from {ret:06x}")
        if wd.fatal_assert_at is None:
            wd.fatal_assert_at = insns
            if ret == COMPOSITOR_DEFAULT_ARM:
                _band_compositor_assert_dump(cpu, bus, cfg, log, insns)
    elif pc == FN_PS_ALLOC:
        return _ps_alloc_hook(cpu, bus, cfg, log, insns)
    elif pc == FN_PS_ALLOC_RTS:
        if cpu.d(0) == 0:
            ret = bus.read_long(cpu.sp())
            _info(cfg, log, insns, f"FUN_005f6d32 FAILED caller={ret:06x}")
    elif pc == FN_PS_OUT:
        _ps_out_trace(cpu, bus, log)
    elif pc == PC_PS_ERROR_RECOVERY:
        if wd.stop_at_insn is None:
            wd.stop_at_insn = insns + PS_ERROR_GRACE_INSNS
            _info(cfg, log, insns, "PS error raised (ps_exec_loop recovery)")
    elif pc == FN_SCAN_BUF_CTOR:
        _scan_buf_ctor_hook(cpu, bus, cfg, cap, log, insns)
    elif pc == FN_BITMAP_CFG:
        _bitmap_cfg_hook(cpu, bus, cfg, log, insns)
    elif pc == FN_SETPAGEDEV_ENTRY:
        _setpagedev_entry_hook(cpu, bus, cfg)
    elif pc == FN_SETPAGEDEV_POST_CORNER:
        _setpagedev_matrix_hook(cpu, bus, cfg)
    elif pc == FN_BAND_WRITE:
        _band_write_hook(cpu, bus, cfg, cap, wd, log, insns)
    elif pc == FN_SHOWPAGE_EMIT_RETURN:
        _page_capture_hook(bus, host, cfg, cap, wd, log, sink, insns)
    elif pc == PC_BAND_BUF_ALLOC_DONE:
        buf_ptr = cpu.d(0)
        if buf_ptr:
            host.page_band_bufs.append(buf_ptr)
    elif pc == PC_ENGINE_DONE_LATCH:
        _engine_done_latch(bus)
    elif pc == PC_PAGE_RING_RETIRE:
        _page_ring_retire(bus)
    return False


def _engine_done_latch(bus: Bus) -> None:
    """Move one slot off the engine's in-use list onto its done slot."""
    eng = bus.read_long(host_rom.DAT_PS_DEVICE)
    if eng == 0 or bus.read_long(eng + 0xC) != 0:
        return
    head = bus.read_long(eng + 0x10)
    if head == 0:
        return
    bus.write_long(eng + 0x10, bus.read_long(head))
    bus.write_long(head, 0)
    bus.write_long(head + 4, 0)
    bus.write_long(eng + 0xC, head)


def _page_ring_retire(bus: Bus) -> None:
    """Retire the consumer-side ring slot and advance the reader index."""
    count = _as_i32(bus.read_long(host_rom.DAT_RING_COUNT))
    if count < RING_HIWATER:
        return
    cons = bus.read_long(host_rom.DAT_RING_READER)
    slot = host_rom.DAT_RING_BASE + (cons & 0xF) * RING_SLOT_BYTES
    for off in SLOT_DIRTY_FIELDS:
        bus.write_long(slot + off, 0)
    bus.write_long(host_rom.DAT_RING_COUNT, (count - 1) & _M32)
    bus.write_long(host_rom.DAT_RING_READER, (cons + 1) & 0xF)


def _band_compositor_assert_dump(
    cpu: CpuCore, bus: Bus, cfg: Cfg, log: Logger, insns: int
) -> None:
    if cfg.quiet:
        return
    a6 = cpu.a(6)
    p1 = bus.read_long(a6 + 8)
    p2 = bus.read_long(a6 + 12)
    p3 = bus.read_long(a6 + 16)
    bad_byte = bus.read_byte((a6 - 0x8D) & _M32)
    pu_var20 = bus.read_long(p2)
    elem_word = bus.read_long(pu_var20) if pu_var20 else 0
    pool_cur = bus.read_long(host_rom.DAT_POOL_CUR)
    pool_end = bus.read_long(host_rom.DAT_POOL_END)
    ring_cnt = bus.read_long(host_rom.DAT_RING_COUNT)
    _info(cfg, log, insns,
          f"  band_compositor: A6=${a6:08x} p1=${p1:08x} p2=${p2:08x} p3=${p3:08x}")
    _info(cfg, log, insns,
          f"  bad_type=0x{bad_byte:02x} *p2=${pu_var20:08x} *(*p2)[u32]=${elem_word:08x}")
    _info(cfg, log, insns,
          f"  pool_cur=${pool_cur:x} / pool_end=${pool_end:x}  page_ring_count={ring_cnt}")
    a4 = cpu.a(4)
    _info(cfg, log, insns, f"  A4 (walk cursor) = ${a4:08x}")
    limit = RAM_BASE + RAM_SIZE
    if a4 and a4 < limit - 64:
        start = max(a4 - 16, 0)
        window = bytes(bus.read_byte(start + i) for i in range(64))
        _info(cfg, log, insns, f"  A4[-16..+48]: {_hex_list(window)}")
    if pu_var20 and pu_var20 < limit - 32:
        window = bytes(bus.read_byte(pu_var20 + i) for i in range(32))
        _info(cfg, log, insns, f"  *p2[0..32]: {_hex_list(window)}")


def _ps_alloc_hook(cpu: CpuCore, bus: Bus, cfg: Cfg, log: Logger, insns: int) -> bool:
    sp = cpu.sp()
    if bus.read_long(sp) != PS_ALLOC_HIDPI_CALLER:
        return False
    size = bus.read_long(sp + 4)
    _info(cfg, log, insns, f"ps_alloc hijack size={size} -> ${HIDPI_BIGBUF:x}")
    short_circuit_rts(cpu, bus, HIDPI_BIGBUF)
    return True


def _ps_out_trace(cpu: CpuCore, bus: Bus, log: Logger) -> None:
    sp = cpu.sp()
    buf = bus.read_long(sp + 4)
    cnt = bus.read_long(sp + 12)
    if cnt == 0 or cnt >= 8192:
        return
    chars = []
    for i in range(min(cnt, 1023)):
        b = bus.read_byte(buf + i)
        if b == 0x0A:
            chars.append("\\")
        elif 0x20 <= b <= 0x7E:
            chars.append(chr(b))
        else:
            chars.append(".")
    log.ps_out(cnt, "".join(chars))


def _scan_buf_ctor_hook(
    cpu: CpuCore, bus: Bus, cfg: Cfg, cap: Capture, log: Logger, insns: int
) -> None:
    if cfg.paper_w_px == 0 and cfg.paper_h_px == 0:
        return
    p = bus.read_long(cpu.sp() + 4)
    if p == 0:
        return
    stride = _div_ceil(cfg.paper_w_px, 8) if cfg.paper_w_px else bus.read_long(p + SB_STRIDE)
    height = cfg.paper_h_px if cfg.paper_h_px else bus.read_long(p + SB_HEIGHT)
    band_h = bus.read_long(p + SB_BAND_H)
    nbands = _div_ceil(height, band_h) if band_h else 7
    pool_size = (stride * height) & _M32

    bus.write_long(p + SB_BAND_H, band_h)
    bus.write_long(p + SB_STRIDE, stride)
    bus.write_long(p + SB_HEIGHT, height)
    bus.write_long(p + SB_NBANDS, nbands)
    if bus.read_long(p + SB_POOL_SIZE) < pool_size:
        bus.write_long(p + SB_POOL_SIZE, pool_size)
    key = (stride, height, nbands, pool_size)
    if cap.last_scan_buf_key != key:
        cap.last_scan_buf_key = key
        _info(cfg, log, insns,
              f"scan_buf: stride={stride} H={height} nbands={nbands} poolsize={pool_size}")


def _bitmap_cfg_hook(cpu: CpuCore, bus: Bus, cfg: Cfg, log: Logger, insns: int) -> None:
    p = bus.read_long(cpu.sp() + 4)
    if p == 0:
        return
    old_stride = bus.read_long(p + BC_STRIDE)
    old_h = bus.read_long(p + BC_HEIGHT)
    new_stride = _div_ceil(cfg.paper_w_px, 8)
    if cfg.paper_w_px:
        bus.write_long(p + BC_STRIDE, new_stride)
    if cfg.paper_h_px:
        bus.write_long(p + BC_HEIGHT, cfg.paper_h_px)
    _info(cfg, log, insns,
          f"bitmap_cfg: stride {old_stride}->{new_stride} H {old_h}->{cfg.paper_h_px}")


def _setpagedev_entry_hook(cpu: CpuCore, bus: Bus, cfg: Cfg) -> None:
    if cfg.paper_w_px == 0 and cfg.paper_h_px == 0:
        return
    sp = cpu.sp()
    if cfg.paper_w_px:
        bus.write_long(sp + 12, cfg.paper_w_px)
    if cfg.paper_h_px:
        bus.write_long(sp + 16, cfg.paper_h_px)


def _setpagedev_matrix_hook(cpu: CpuCore, bus: Bus, cfg: Cfg) -> None:
    dev = cpu.d(0)
    if dev == 0:
        return
    height = _f32(float(bus.read_long(dev + DEV_HEIGHT_PX)))
    sub = bus.read_long(dev + DEV_SUB_STRUCT)
    scale = _f32(_f32(float(cfg.paper_dpi)) / 72.0)

    bus.write_long(dev + DEV_MATRIX_A, _f32_bits(scale))
    bus.write_long(dev + DEV_MATRIX_D, _f32_bits(-scale))
    bus.write_long(dev + DEV_MATRIX_TX, 0)
    bus.write_long(dev + DEV_MATRIX_TY, _f32_bits(height))
    if sub:
        bus.write_long(sub + SUB_MATRIX_A, _f32_bits(scale))
        bus.write_long(sub + SUB_MATRIX_D, _f32_bits(-scale))
        bus.write_long(sub + SUB_MATRIX_TX, 0)
        bus.write_long(sub + SUB_MATRIX_TY, 0)


def _band_write_hook(
    cpu: CpuCore, bus: Bus, cfg: Cfg, cap: Capture, wd: Watchdog, log: Logger, insns: int
) -> None:
    sp = cpu.sp()
    band_y = bus.read_long(sp + 8)
    scan_buf = bus.read_long(sp + 12)
    dev = bus.read_long(sp + 20)

    cap.slot_ptr = bus.read_long(scan_buf + SCAN_SLOT_PTR)
    cap.page_w = bus.read_long(dev + PAGE_W_PX)
    cap.page_h = bus.read_long(dev + PAGE_H_PX)

    first_band = band_y == 0 and cap.page_counter == 0
    if (first_band or cfg.ram_snapshot_force) and cfg.ram_snapshot:
        wd.ram_snapshot = bytes(bus.ram)
        _info(cfg, log, insns, f"RAM_SNAPSHOT captured ({RAM_SIZE} bytes)")


def crop_to_imageable(
    buf: bytes, w: int, h: int, stride: int, dpi: int
) -> tuple[int, int, bytes]:
    """Trim the 0.25-inch hardware margin off all four sides of a packed raster."""
    margin = min(((dpi & _M32) * 75) // 300, w // 2, h // 2)
    if margin == 0:
        return w, h, bytes(buf)
    new_w = w - 2 * margin
    new_h = h - 2 * margin
    new_stride = _div_ceil(new_w, 8)
    if new_w == 0:
        return new_w, new_h, bytes(new_stride * new_h)
    row_bits = stride * 8
    keep = (1 << new_w) - 1
    pad = new_stride * 8 - new_w
    out = bytearray()
    for y in range(margin, margin + new_h):
        row = int.from_bytes(buf[y * stride:(y + 1) * stride], "big")
        bits = (row >> (row_bits - margin - new_w)) & keep
        out += (bits << pad).to_bytes(new_stride, "big")
    return new_w, new_h, bytes(out)


def _page_capture_hook(
    bus: Bus,
    host: HostRom,
    cfg: Cfg,
    cap: Capture,
    wd: Watchdog,
    log: Logger,
    sink: PageSink,
    insns: int,
) -> None:
    if cap.slot_ptr == 0 or cap.page_w == 0 or cap.page_h == 0:
        return
    stride = _div_ceil(cap.page_w, 8)
    total = stride * cap.page_h
    page_idx = cap.page_counter
    cap.page_counter += 1

    raster = bytes(bus.read_byte(cap.slot_ptr + i) for i in range(total))
    if cfg.lj3:
        out_w, out_h, out_buf = crop_to_imageable(
            raster, cap.page_w, cap.page_h, stride, cfg.paper_dpi
        )
    else:
        out_w, out_h, out_buf = cap.page_w, cap.page_h, raster
    sink.emit_page(CapturedPage(index=page_idx, width=out_w, height=out_h, pbm=out_buf))
    _info(cfg, log, insns,
          f"wrote page {page_idx:02} ({out_w}x{out_h}, {len(out_buf)} bytes "
          f"from ${cap.slot_ptr:06x})")
    captured = cap.slot_ptr
    cap.slot_ptr = 0
    host_rom.page_done(host, bus, captured, total)
    # A page came out: a fatal_assert seen earlier was recoverable.
    wd.fatal_assert_at = None
    if cfg.exit_after is not None and cap.page_counter >= cfg.exit_after:
        _info(cfg, log, insns, f"captured {cap.page_counter} page(s), stop requested")
        wd.stop_requested = True