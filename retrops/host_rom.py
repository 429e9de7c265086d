"""Host-side glue: low-memory soft traps and the IPC hooks that feed PostScript."""

from __future__ import annotations

from .bus import Bus
from .cpu import CpuCore, short_circuit_rts
from .output import Logger

TRAP_PRINTER_PROBE = 0x04EA
TRAP_HEAP_TOP = 0x04F0
TRAP_CONFIG_BYTE = 0x0406
TRAP_INSTALL_TRAP0 = 0x0550
TRAP_LCD_STRING = 0x061C
TRAP_ENGINE_POLL = 0x07BA
TRAP_ENGINE_CMD = 0x07C6
TRAP_ENGINE_RESP = 0x07C0
TRAP_PANIC = 0x073A
TRAPS_CFG_ZERO = (0x0940, 0x0976, 0x097C)
TRAPS_ENGINE_OK = (0x07A8, 0x07AE, 0x07B4)

PC_HANDSHAKE = 0x0040_0662
PC_ENG_STATUS_POLL = 0x0052_ACC4
FN_IPC_RECV_8 = 0x005F_7AE0
FN_IPC_RECV = 0x005F_9248
FN_IPC_IOCTL = 0x005F_8900
FN_TASK_WAIT_QUEUE = 0x005F_7784

DAT_TASK_QUEUE_BASE = 0x00B1_9E1C
DAT_ENG_STRUCT = 0x00B1_9E44
DAT_PS_DEVICE = 0x00B1_7E78
DAT_PS_SERVER_STATE = 0x00B1_8DF4
DAT_RING_READER = 0x00B1_8538
DAT_RING_BASE = 0x00B1_8550
DAT_JOB_DESC_SCRATCH = 0x00B3_E000
DAT_RING_COUNT = 0x00B1_8540
DAT_POOL_CUR = 0x00B1_8C6C
DAT_POOL_END = 0x00B1_8C68

ROM_STR_SERIAL = 0x004F_FAFB
PS_JOB_QUEUE = 6
PS_JOB_MSG_TYPE = 0x14
ENGINE_TYPE_LJ3 = 7

IPC_INJECT_WARMUP_INSNS = 3_000_000
ENGINE_READY_ADDR = 0x00D0_0025


class HostRom:
    """State of the emulated host printer ROM around the cartridge."""

    def __init__(self, ps_input: bytes, exit_after_env: int | None, prolog: bytes) -> None:
        self.stream = bytes(prolog) + bytes(ps_input)
        self.stream_pos = 0
        self.handshake_hits = 0
        self.engine_busy = 0
        self.job_injected = False
        self.exit_after_env = exit_after_env
        self.page_band_bufs: list[int] = []
        self.stop_requested = False
        self.panic_fired = False

    def init(self, bus: Bus) -> None:
        """Mark the printer engine ready before any cart code runs."""
        bus.write_byte(ENGINE_READY_ADDR, 0x01)

    def maybe_grow_pool_end(self, bus: Bus, insns: int) -> None:
        target = 0x0040_0000
        if insns > 6_000_000:
            cur = bus.read_long(DAT_POOL_END)
            if 0 < cur < target:
                bus.write_long(DAT_POOL_END, target)


def lowmem_trap(cpu: CpuCore, bus: Bus, host: HostRom, log: Logger, pc: int) -> None:
    """Service a call into the host-ROM soft-trap page."""
    sp = cpu.sp()
    a1 = bus.read_long(sp + 4)
    a2 = bus.read_long(sp + 8)

    if pc == TRAP_PRINTER_PROBE:
        d0 = 0x00B0_0000
    elif pc == TRAP_HEAP_TOP:
        d0 = 0x00E0_0000
    elif pc == TRAP_CONFIG_BYTE or pc in TRAPS_CFG_ZERO:
        d0 = 0
    elif pc == TRAP_ENGINE_POLL:
        d0 = 1 if a1 == 3 or host.engine_busy > 0 else 0
    elif pc == TRAP_ENGINE_CMD:
        host.engine_busy = 3
        d0 = 1
    elif pc == TRAP_ENGINE_RESP:
        bus.write_byte(a1, ENGINE_TYPE_LJ3)
        host.engine_busy = 0
        d0 = 1
    elif pc == TRAP_LCD_STRING:
        _print_lcd_string(bus, log, a1)
        d0 = 0
    elif pc == TRAP_INSTALL_TRAP0:
        if a1 == 0:
            bus.write_long(0x80, a2)
        d0 = 0
    elif pc == TRAP_PANIC:
        log.panic("[host] cartridge PANIC")
        host.panic_fired = True
        host.stop_requested = True
        d0 = 0
    elif pc in TRAPS_ENGINE_OK:
        d0 = 1
    else:
        d0 = 0
    cpu.set_d(0, d0)


def _print_lcd_string(bus: Bus, log: Logger, addr: int) -> None:
    chars = []
    for i in range(79):
        c = bus.read_byte(addr + i)
        if c == 0:
            break
        chars.append(chr(c) if 32 <= c < 127 else "?")
    log.lcd("".join(chars))


def on_instr(
    cpu: CpuCore,
    bus: Bus,
    host: HostRom,
    log: Logger,
    insns: int,
    pc: int,
    pages_emitted: int,
) -> bool:
    """Apply host patches anchored at ``pc``; True when one handled it."""
    if pc == PC_HANDSHAKE:
        host.handshake_hits += 1
        if host.handshake_hits == 3:
            d3 = cpu.d(3)
            bus.write_word(d3, bus.read_word(d3) & ~0x4000)
        return True
    if pc == PC_ENG_STATUS_POLL:
        eng = bus.read_long(DAT_ENG_STRUCT)
        b = bus.read_byte(eng + 0x2D)
        if b & 2:
            bus.write_byte(eng + 0x2D, b & ~2)
        return True
    if pc == FN_TASK_WAIT_QUEUE:
        return _task_wait_queue_hook(cpu, bus)
    if pc == FN_IPC_RECV_8:
        return _ipc_recv_8_hook(cpu, bus, host, insns)
    if pc == FN_IPC_RECV:
        return _ipc_recv_hook(cpu, bus, host, log, pages_emitted)
    if pc == FN_IPC_IOCTL:
        return _ipc_ioctl_hook(cpu, bus, host, log, pages_emitted)
    return False


def _task_wait_queue_hook(cpu: CpuCore, bus: Bus) -> bool:
    sp = cpu.sp()
    qid = bus.read_word(sp + 6)
    qbase = bus.read_long(DAT_TASK_QUEUE_BASE)
    if bus.read_long(qbase + qid * 8) == 0:
        return False
    bus.write_long(qbase + qid * 8, 0)
    short_circuit_rts(cpu, bus, 0)
    return True


def _ipc_recv_8_hook(cpu: CpuCore, bus: Bus, host: HostRom, insns: int) -> bool:
    if host.job_injected:
        return False
    sp = cpu.sp()
    handle = bus.read_long(sp + 4) & 0xFFFF
    bufp = bus.read_long(sp + 8)
    if handle != PS_JOB_QUEUE or not host.stream:
        return False
    if insns < IPC_INJECT_WARMUP_INSNS:
        return False
    desc = DAT_JOB_DESC_SCRATCH
    for off in range(64):
        bus.write_byte(desc + off, 0)
    for off, value in ((0, ROM_STR_SERIAL), (4, 1), (8, ROM_STR_SERIAL),
                       (12, 1), (16, ROM_STR_SERIAL), (20, 7)):
        bus.write_long(desc + off, value)
    bus.write_word(bufp, 0)
    bus.write_word(bufp + 2, PS_JOB_MSG_TYPE)
    bus.write_long(bufp + 4, desc)
    short_circuit_rts(cpu, bus, 1)
    host.job_injected = True
    return True


def _stdin_handle(bus: Bus) -> int:
    state = bus.read_long(DAT_PS_SERVER_STATE)
    return bus.read_long(state + 0x2C) if state else 0


def _ipc_recv_hook(cpu: CpuCore, bus: Bus, host: HostRom, log: Logger, pages_emitted: int) -> bool:
    if not host.stream:
        return False
    sp = cpu.sp()
    handle = bus.read_long(sp + 4)
    buf = bus.read_long(sp + 8)
    count = bus.read_long(sp + 12)
    stdin_h = _stdin_handle(bus)
    if stdin_h == 0 or (handle & 0xFFFF) != (stdin_h & 0xFFFF):
        return False
    tail = host.stream[host.stream_pos:]
    if not tail and pages_emitted > 0 and host.exit_after_env is None:
        log.info(f"[host] job done: input drained + {pages_emitted} page(s) captured")
        host.stop_requested = True
        return False
    chunk = tail[:count]
    for i, b in enumerate(chunk):
        bus.write_byte(buf + i, b)
    host.stream_pos += len(chunk)
    short_circuit_rts(cpu, bus, len(chunk))
    return True


def _ipc_ioctl_hook(cpu: CpuCore, bus: Bus, host: HostRom, log: Logger, pages_emitted: int) -> bool:
    if not host.stream:
        return False
    sp = cpu.sp()
    handle = bus.read_long(sp + 4)
    subop = bus.read_long(sp + 8)
    stdin_h = _stdin_handle(bus)
    if stdin_h == 0 or (handle & 0xFFFF) != (stdin_h & 0xFFFF):
        return False
    if subop != 0x13:
        return False
    if host.stream_pos < len(host.stream):
        short_circuit_rts(cpu, bus, 1)
        return True
    if pages_emitted > 0 and host.exit_after_env is None:
        log.info(f"[host] job done: scanner idle-poll + {pages_emitted} page(s) captured")
        host.stop_requested = True
    return False


def _find_drv24(bus: Bus) -> int:
    reader = bus.read_long(DAT_RING_READER) & 0xF
    driver = bus.read_long(DAT_RING_BASE + reader * 0x44 + 0x8)
    return bus.read_long(driver + 0x24) if driver else 0


def page_done(host: HostRom, bus: Bus, frame_addr: int, frame_bytes: int) -> None:
    """Synthesize the engine-done side effects after a page is captured."""
    pool_descriptor = 0x00B1_852C
    freelist_head = 0x34
    band_buf_size = 0x3FC

    pool = bus.read_long(pool_descriptor)
    if pool:
        for buf in host.page_band_bufs:
            head = bus.read_long(pool + freelist_head)
            bus.write_long(buf, head)
            bus.write_long(pool + freelist_head, buf)
            cur = bus.read_long(DAT_POOL_CUR)
            if cur >= band_buf_size:
                bus.write_long(DAT_POOL_CUR, cur - band_buf_size)
    host.page_band_bufs.clear()

    pdev = bus.read_long(DAT_PS_DEVICE)
    if pdev:
        bus.write_long(pdev + 0x14, 0)

    drv24 = _find_drv24(bus)
    if drv24:
        cache = bus.read_long(drv24 + 0x78)
        nslots = bus.read_long(drv24 + 0x3C)
        nbands = bus.read_long(drv24 + 0x40)
        if cache and nslots <= 64:
            for i in range(nslots):
                cslot = cache + i * 0x14
                bus.write_long(cslot, 0)
                bus.write_long(cslot + 4, 0)
                barr = bus.read_long(cslot + 0x10)
                if barr and 0 < nbands < 1024:
                    for j in range(nbands):
                        bus.write_byte(barr + j, 0)

    if frame_addr and frame_bytes:
        for off in range(frame_bytes):
            bus.write_byte(frame_addr + off, 0)