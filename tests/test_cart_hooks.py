import struct

import pytest

from retrops import cart_hooks, host_rom
from retrops.bus import RAM_BASE, RAM_SIZE, ROM_SIZE, Bus
from retrops.cart_hooks import Capture, Watchdog, crop_to_imageable, on_instr
from retrops.cfg import Cfg, CfgInputs
from retrops.cpu import CpuCore
from retrops.host_rom import HostRom
from retrops.output import ListSink, Logger

SP = RAM_BASE + 0x10000
STRUCT = RAM_BASE + 0x20000


class RecordingLogger(Logger):
    def __init__(self):
        self.lines = []

    def info(self, line):
        self.lines.append(("info", line))

    def lcd(self, line):
        self.lines.append(("lcd", line))

    def ps_out(self, count, line):
        self.lines.append(("ps_out", count, line))

    def hint(self, line):
        self.lines.append(("hint", line))

    def fatal_assert(self, line):
        self.lines.append(("fatal_assert", line))

    def panic(self, line):
        self.lines.append(("panic", line))


class Env:
    def __init__(self, **cfg_kwargs):
        self.bus = Bus(bytes(ROM_SIZE))
        self.cpu = CpuCore()
        self.cpu.set_sp(SP)
        self.host = HostRom(b"", None, b"")
        cfg_kwargs.setdefault("quiet", True)
        self.cfg = Cfg.from_inputs(CfgInputs(**cfg_kwargs))
        self.cap = Capture()
        self.wd = Watchdog()
        self.log = RecordingLogger()
        self.sink = ListSink()

    def args(self, pc, insns=100):
        return (self.cpu, self.bus, self.host, self.cfg, self.cap,
                self.wd, self.log, self.sink, insns, pc)


def test_crop_zero_margin_returns_input():
    data = bytes([0xAA, 0x55, 0x0F, 0xF0])
    assert crop_to_imageable(data, 16, 2, 2, 0) == (16, 2, data)


def test_crop_moves_margin_pixel_to_origin():
    w = h = 160
    stride = w // 8
    buf = bytearray(stride * h)
    # pixel at (75, 75): margin at 300 dpi is 75
    buf[75 * stride + 75 // 8] = 0x80 >> (75 % 8)
    new_w, new_h, out = crop_to_imageable(bytes(buf), w, h, stride, 300)
    assert (new_w, new_h) == (w - 150, h - 150)
    assert out[0] == 0x80
    assert sum(bin(b).count("1") for b in out) == 1


def test_crop_full_black_masks_tail_bits():
    w = h = 160
    stride = w // 8
    new_w, new_h, out = crop_to_imageable(b"\xff" * (stride * h), w, h, stride, 300)
    new_stride = (new_w + 7) // 8
    assert len(out) == new_stride * new_h
    assert sum(bin(b).count("1") for b in out) == new_w * new_h


def test_crop_margin_limited_by_size():
    new_w, new_h, out = crop_to_imageable(b"\xff" * 4, 4, 4, 1, 300)
    assert (new_w, new_h, out) == (0, 0, b"")


def test_ps_alloc_hijacked_for_hidpi_caller():
    env = Env()
    env.bus.write_long(SP, cart_hooks.PS_ALLOC_HIDPI_CALLER)
    env.bus.write_long(SP + 4, 1234)
    assert on_instr(*env.args(cart_hooks.FN_PS_ALLOC)) is True
    assert env.cpu.d(0) == cart_hooks.HIDPI_BIGBUF
    assert env.cpu.pc == cart_hooks.PS_ALLOC_HIDPI_CALLER
    assert env.cpu.sp() == SP + 4


def test_ps_alloc_other_caller_untouched():
    env = Env()
    env.bus.write_long(SP, 0x0050_0000)
    env.cpu.pc = 0x1234
    assert on_instr(*env.args(cart_hooks.FN_PS_ALLOC)) is False
    assert env.cpu.pc == 0x1234
    assert env.cpu.sp() == SP


def test_ps_error_recovery_arms_grace_once():
    env = Env()
    on_instr(*env.args(cart_hooks.PC_PS_ERROR_RECOVERY, insns=1000))
    assert env.wd.stop_at_insn == 1000 + cart_hooks.PS_ERROR_GRACE_INSNS
    on_instr(*env.args(cart_hooks.PC_PS_ERROR_RECOVERY, insns=9000))
    assert env.wd.stop_at_insn == 1000 + cart_hooks.PS_ERROR_GRACE_INSNS


def test_fatal_assert_records_first_hit():
    env = Env()
    env.bus.write_long(SP, 0x0051_2345)
    on_instr(*env.args(cart_hooks.FN_FATAL_ASSERT, insns=42))
    on_instr(*env.args(cart_hooks.FN_FATAL_ASSERT, insns=99))
    assert env.wd.fatal_assert_at == 42
    kinds = [entry for entry in env.log.lines if entry[0] == "fatal_assert"]
    assert len(kinds) == 2
    assert kinds[0][1].endswith("fatal_assert from 512345")


def test_ps_out_escapes_bytes():
    env = Env()
    buf = STRUCT
    for i, b in enumerate(b"hi\n\x01"):
        env.bus.write_byte(buf + i, b)
    env.bus.write_long(SP + 4, buf)
    env.bus.write_long(SP + 12, 4)
    on_instr(*env.args(cart_hooks.FN_PS_OUT))
    assert env.log.lines == [("ps_out", 4, "hi\\.")]


def test_ps_out_ignores_empty_count():
    env = Env()
    env.bus.write_long(SP + 4, STRUCT)
    env.bus.write_long(SP + 12, 0)
    on_instr(*env.args(cart_hooks.FN_PS_OUT))
    assert env.log.lines == []


def test_band_buf_alloc_tracks_nonzero_pointer():
    env = Env()
    env.cpu.set_d(0, STRUCT)
    on_instr(*env.args(cart_hooks.PC_BAND_BUF_ALLOC_DONE))
    env.cpu.set_d(0, 0)
    on_instr(*env.args(cart_hooks.PC_BAND_BUF_ALLOC_DONE))
    assert env.host.page_band_bufs == [STRUCT]


def test_engine_done_latch_moves_head():
    env = Env()
    eng, head, nxt = STRUCT, STRUCT + 0x100, STRUCT + 0x200
    env.bus.write_long(host_rom.DAT_PS_DEVICE, eng)
    env.bus.write_long(eng + 0x10, head)
    env.bus.write_long(head, nxt)
    env.bus.write_long(head + 4, 0xDEAD)
    on_instr(*env.args(cart_hooks.PC_ENGINE_DONE_LATCH))
    assert env.bus.read_long(eng + 0xC) == head
    assert env.bus.read_long(eng + 0x10) == nxt
    assert env.bus.read_long(head) == 0
    assert env.bus.read_long(head + 4) == 0


def test_page_ring_retire_advances_reader():
    env = Env()
    env.bus.write_long(host_rom.DAT_RING_COUNT, cart_hooks.RING_HIWATER)
    env.bus.write_long(host_rom.DAT_RING_READER, 3)
    slot = host_rom.DAT_RING_BASE + 3 * cart_hooks.RING_SLOT_BYTES
    for off in cart_hooks.SLOT_DIRTY_FIELDS:
        env.bus.write_long(slot + off, 0x1111)
    on_instr(*env.args(cart_hooks.PC_PAGE_RING_RETIRE))
    assert env.bus.read_long(host_rom.DAT_RING_COUNT) == cart_hooks.RING_HIWATER - 1
    assert env.bus.read_long(host_rom.DAT_RING_READER) == 4
    assert all(env.bus.read_long(slot + off) == 0 for off in cart_hooks.SLOT_DIRTY_FIELDS)


def test_page_ring_retire_below_hiwater_noop():
    env = Env()
    env.bus.write_long(host_rom.DAT_RING_COUNT, 2)
    env.bus.write_long(host_rom.DAT_RING_READER, 5)
    on_instr(*env.args(cart_hooks.PC_PAGE_RING_RETIRE))
    assert env.bus.read_long(host_rom.DAT_RING_COUNT) == 2
    assert env.bus.read_long(host_rom.DAT_RING_READER) == 5


def test_scan_buf_ctor_overrides_geometry():
    env = Env(paper_w_px=100, paper_h_px=50)
    p = STRUCT
    env.bus.write_long(SP + 4, p)
    env.bus.write_long(p + cart_hooks.SB_BAND_H, 16)
    on_instr(*env.args(cart_hooks.FN_SCAN_BUF_CTOR))
    stride = env.bus.read_long(p + cart_hooks.SB_STRIDE)
    height = env.bus.read_long(p + cart_hooks.SB_HEIGHT)
    nbands = env.bus.read_long(p + cart_hooks.SB_NBANDS)
    assert (stride - 1) * 8 < 100 <= stride * 8
    assert height == 50
    assert (nbands - 1) * 16 < 50 <= nbands * 16
    assert env.bus.read_long(p + cart_hooks.SB_POOL_SIZE) == stride * height
    assert env.cap.last_scan_buf_key == (stride, height, nbands, stride * height)


def test_setpagedev_entry_writes_paper_pixels():
    env = Env(paper_w_px=640, paper_h_px=480)
    on_instr(*env.args(cart_hooks.FN_SETPAGEDEV_ENTRY))
    assert env.bus.read_long(SP + 12) == 640
    assert env.bus.read_long(SP + 16) == 480


def test_setpagedev_matrix_sets_scale_and_flip():
    env = Env()
    dev, sub = STRUCT, STRUCT + 0x100
    env.cpu.set_d(0, dev)
    env.bus.write_long(dev + cart_hooks.DEV_HEIGHT_PX, 3300)
    env.bus.write_long(dev + cart_hooks.DEV_SUB_STRUCT, sub)
    on_instr(*env.args(cart_hooks.FN_SETPAGEDEV_POST_CORNER))

    def f32(addr):
        return struct.unpack(">f", struct.pack(">I", env.bus.read_long(addr)))[0]

    scale = env.cfg.paper_dpi / 72.0
    assert f32(dev + cart_hooks.DEV_MATRIX_A) == pytest.approx(scale)
    assert f32(dev + cart_hooks.DEV_MATRIX_D) == pytest.approx(-scale)
    assert f32(dev + cart_hooks.DEV_MATRIX_TY) == 3300.0
    assert f32(sub + cart_hooks.SUB_MATRIX_A) == pytest.approx(scale)
    assert env.bus.read_long(sub + cart_hooks.SUB_MATRIX_TY) == 0


def _setup_band_write(env, band_y=0):
    scan_buf, dev = STRUCT, STRUCT + 0x100
    env.bus.write_long(SP + 8, band_y)
    env.bus.write_long(SP + 12, scan_buf)
    env.bus.write_long(SP + 20, dev)
    env.bus.write_long(scan_buf + cart_hooks.SCAN_SLOT_PTR, STRUCT + 0x1000)
    env.bus.write_long(dev + cart_hooks.PAGE_W_PX, 16)
    env.bus.write_long(dev + cart_hooks.PAGE_H_PX, 2)


def test_band_write_records_page_geometry():
    env = Env()
    _setup_band_write(env)
    on_instr(*env.args(cart_hooks.FN_BAND_WRITE))
    assert (env.cap.slot_ptr, env.cap.page_w, env.cap.page_h) == (STRUCT + 0x1000, 16, 2)
    assert env.wd.ram_snapshot is None


def test_band_write_takes_ram_snapshot():
    env = Env(ram_snapshot=True)
    _setup_band_write(env)
    on_instr(*env.args(cart_hooks.FN_BAND_WRITE))
    assert len(env.wd.ram_snapshot) == RAM_SIZE
    assert env.wd.ram_snapshot[0x10000 + 8:0x10000 + 12] == b"\x00\x00\x00\x00"


def test_page_capture_emits_and_clears_frame():
    env = Env(exit_after=1)
    frame = STRUCT + 0x1000
    data = bytes([0x81, 0x42, 0xFF, 0x00])
    for i, b in enumerate(data):
        env.bus.write_byte(frame + i, b)
    env.cap.slot_ptr, env.cap.page_w, env.cap.page_h = frame, 16, 2
    env.wd.fatal_assert_at = 10
    on_instr(*env.args(cart_hooks.FN_SHOWPAGE_EMIT_RETURN))
    assert len(env.sink.pages) == 1
    page = env.sink.pages[0]
    assert (page.index, page.width, page.height, page.pbm) == (0, 16, 2, data)
    assert env.cap.page_counter == 1
    assert env.cap.slot_ptr == 0
    assert all(env.bus.read_byte(frame + i) == 0 for i in range(4))
    assert env.wd.fatal_assert_at is None
    assert env.wd.stop_requested is True


def test_page_capture_without_slot_does_nothing():
    env = Env()
    on_instr(*env.args(cart_hooks.FN_SHOWPAGE_EMIT_RETURN))
    assert env.sink.pages == []
    assert env.cap.page_counter == 0


def test_unknown_pc_returns_false_without_effects():
    env = Env()
    assert on_instr(*env.args(0x0040_1000)) is False
    assert env.log.lines == []
    assert env.wd == Watchdog()