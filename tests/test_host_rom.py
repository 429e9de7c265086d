import pytest

from retrops import host_rom
from retrops.bus import RAM_BASE, ROM_SIZE, Bus
from retrops.cpu import CpuCore
from retrops.host_rom import HostRom, lowmem_trap, on_instr, page_done
from retrops.output import NullLogger

STACK = RAM_BASE + 0x8000
RET = RAM_BASE + 0x4444


class RecordingLogger(NullLogger):
    def __init__(self):
        self.lines = []

    def info(self, line):
        self.lines.append(("info", line))

    def lcd(self, line):
        self.lines.append(("lcd", line))

    def panic(self, line):
        self.lines.append(("panic", line))


@pytest.fixture
def env():
    bus = Bus(bytes(ROM_SIZE))
    cpu = CpuCore()
    cpu.set_sp(STACK)
    bus.write_long(STACK, RET)
    return cpu, bus, RecordingLogger()


def args(bus, *values):
    for i, v in enumerate(values):
        bus.write_long(STACK + 4 + 4 * i, v)


def test_stream_is_prolog_then_input():
    host = HostRom(b"ps", None, b"pro ")
    assert host.stream == b"pro ps"
    assert host.stream_pos == 0


def test_init_marks_engine_ready(env):
    _, bus, _ = env
    HostRom(b"", None, b"").init(bus)
    assert bus.read_byte(0x00D0_0025) == 1


def test_grow_pool_end(env):
    _, bus, _ = env
    host = HostRom(b"", None, b"")
    bus.write_long(host_rom.DAT_POOL_END, 0x1000)
    host.maybe_grow_pool_end(bus, 1_000_000)
    assert bus.read_long(host_rom.DAT_POOL_END) == 0x1000
    host.maybe_grow_pool_end(bus, 7_000_000)
    assert bus.read_long(host_rom.DAT_POOL_END) == 0x0040_0000


def test_simple_traps(env):
    cpu, bus, log = env
    host = HostRom(b"", None, b"")
    lowmem_trap(cpu, bus, host, log, host_rom.TRAP_HEAP_TOP)
    assert cpu.d(0) == 0x00E0_0000
    lowmem_trap(cpu, bus, host, log, host_rom.TRAP_PRINTER_PROBE)
    assert cpu.d(0) == 0x00B0_0000


def test_engine_cmd_poll_resp(env):
    cpu, bus, log = env
    host = HostRom(b"", None, b"")
    args(bus, RAM_BASE + 0x100)
    lowmem_trap(cpu, bus, host, log, host_rom.TRAP_ENGINE_POLL)
    assert cpu.d(0) == 0
    lowmem_trap(cpu, bus, host, log, host_rom.TRAP_ENGINE_CMD)
    lowmem_trap(cpu, bus, host, log, host_rom.TRAP_ENGINE_POLL)
    assert cpu.d(0) == 1
    lowmem_trap(cpu, bus, host, log, host_rom.TRAP_ENGINE_RESP)
    assert bus.read_byte(RAM_BASE + 0x100) == host_rom.ENGINE_TYPE_LJ3
    assert host.engine_busy == 0


def test_panic_trap(env):
    cpu, bus, log = env
    host = HostRom(b"", None, b"")
    lowmem_trap(cpu, bus, host, log, host_rom.TRAP_PANIC)
    assert host.panic_fired and host.stop_requested
    assert ("panic", "[host] cartridge PANIC") in log.lines


def test_lcd_string(env):
    cpu, bus, log = env
    addr = RAM_BASE + 0x200
    for i, b in enumerate(b"READY\x01\x00"):
        bus.write_byte(addr + i, b)
    args(bus, addr)
    lowmem_trap(cpu, bus, HostRom(b"", None, b""), log, host_rom.TRAP_LCD_STRING)
    assert log.lines == [("lcd", "READY?")]


def test_install_trap0(env):
    cpu, bus, log = env
    args(bus, 0, RAM_BASE + 0x900)
    lowmem_trap(cpu, bus, HostRom(b"", None, b""), log, host_rom.TRAP_INSTALL_TRAP0)
    assert bus.read_long(0x80) == RAM_BASE + 0x900


def test_handshake_clears_bit_on_third_hit(env):
    cpu, bus, log = env
    host = HostRom(b"", None, b"")
    addr = RAM_BASE + 0x300
    bus.write_word(addr, 0xFFFF)
    cpu.set_d(3, addr)
    for _ in range(2):
        assert on_instr(cpu, bus, host, log, 0, host_rom.PC_HANDSHAKE, 0)
    assert bus.read_word(addr) == 0xFFFF
    on_instr(cpu, bus, host, log, 0, host_rom.PC_HANDSHAKE, 0)
    assert bus.read_word(addr) == 0xBFFF


def _set_stdin(bus, handle):
    state = RAM_BASE + 0x5000
    bus.write_long(host_rom.DAT_PS_SERVER_STATE, state)
    bus.write_long(state + 0x2C, handle)


def test_ipc_recv_feeds_stream(env):
    cpu, bus, log = env
    host = HostRom(b"abcdef", None, b"")
    _set_stdin(bus, 5)
    buf = RAM_BASE + 0x6000
    args(bus, 5, buf, 3)
    assert on_instr(cpu, bus, host, log, 0, host_rom.FN_IPC_RECV, 0)
    assert bytes(bus.read_byte(buf + i) for i in range(3)) == b"abc"
    assert cpu.d(0) == 3
    assert cpu.pc == RET
    assert host.stream_pos == 3


def test_ipc_recv_drained_requests_stop(env):
    cpu, bus, log = env
    host = HostRom(b"ab", None, b"")
    host.stream_pos = 2
    _set_stdin(bus, 5)
    args(bus, 5, RAM_BASE + 0x6000, 8)
    assert not on_instr(cpu, bus, host, log, 0, host_rom.FN_IPC_RECV, 1)
    assert host.stop_requested


def test_ipc_recv_wrong_handle(env):
    cpu, bus, log = env
    host = HostRom(b"ab", None, b"")
    _set_stdin(bus, 5)
    args(bus, 9, RAM_BASE + 0x6000, 8)
    assert not on_instr(cpu, bus, host, log, 0, host_rom.FN_IPC_RECV, 0)
    assert host.stream_pos == 0


def test_ioctl_pending_input(env):
    cpu, bus, log = env
    host = HostRom(b"ab", None, b"")
    _set_stdin(bus, 5)
    args(bus, 5, 0x13)
    assert on_instr(cpu, bus, host, log, 0, host_rom.FN_IPC_IOCTL, 0)
    assert cpu.d(0) == 1


def test_recv_8_injects_job_after_warmup(env):
    cpu, bus, log = env
    host = HostRom(b"x", None, b"")
    bufp = RAM_BASE + 0x7000
    args(bus, host_rom.PS_JOB_QUEUE, bufp)
    assert not on_instr(cpu, bus, host, log, 10, host_rom.FN_IPC_RECV_8, 0)
    assert on_instr(cpu, bus, host, log, 4_000_000, host_rom.FN_IPC_RECV_8, 0)
    assert host.job_injected
    assert bus.read_word(bufp + 2) == host_rom.PS_JOB_MSG_TYPE
    assert bus.read_long(bufp + 4) == host_rom.DAT_JOB_DESC_SCRATCH
    assert bus.read_long(host_rom.DAT_JOB_DESC_SCRATCH) == host_rom.ROM_STR_SERIAL


def test_page_done_clears_state(env):
    _, bus, _ = env
    host = HostRom(b"", None, b"")
    frame = RAM_BASE + 0x10000
    for i in range(16):
        bus.write_byte(frame + i, 0xAA)
    pdev = RAM_BASE + 0x20000
    bus.write_long(host_rom.DAT_PS_DEVICE, pdev)
    bus.write_long(pdev + 0x14, 1)
    pool = RAM_BASE + 0x30000
    bus.write_long(0x00B1_852C, pool)
    band = RAM_BASE + 0x40000
    host.page_band_bufs.append(band)
    page_done(host, bus, frame, 16)
    assert all(bus.read_byte(frame + i) == 0 for i in range(16))
    assert bus.read_long(pdev + 0x14) == 0
    assert bus.read_long(pool + 0x34) == band
    assert host.page_band_bufs == []