"""A compact 680x0 integer core covering the instructions the cart firmware relies on."""

from __future__ import annotations

import enum
from dataclasses import dataclass

_M32 = 0xFFFF_FFFF
_MASK = {1: 0xFF, 2: 0xFFFF, 4: _M32}
_MSB = {1: 0x80, 2: 0x8000, 4: 0x8000_0000}

_X, _N, _Z, _V, _C = 0x10, 0x08, 0x04, 0x02, 0x01

ALINE_VECTOR = 10
FLINE_VECTOR = 11
TRAP_VECTOR_BASE = 32


def _sext(value: int, size: int) -> int:
    value &= _MASK[size]
    return value - (_MSB[size] << 1) if value & _MSB[size] else value


class _Illegal(Exception):
    """Internal: the opcode or addressing form is not supported."""


class StepKind(enum.Enum):
    OK = "ok"
    STOPPED = "stopped"
    TRAP_INSTRUCTION = "trap"
    ALINE_TRAP = "aline"
    FLINE_TRAP = "fline"
    ILLEGAL_INSTRUCTION = "illegal"


@dataclass(frozen=True)
class StepResult:
    """Outcome of executing one instruction."""

    kind: StepKind
    opcode: int = 0
    trap_num: int = 0


_OK = StepResult(StepKind.OK)


class CpuCore:
    """Register file plus a single-step interpreter over a :class:`Bus`."""

    def __init__(self) -> None:
        self.dregs = [0] * 8
        self.aregs = [0] * 8
        self.pc = 0
        self.sr = 0x2700
        self.stopped = False

    # ── registers ────────────────────────────────────────────────
    def d(self, n: int) -> int:
        return self.dregs[n]

    def set_d(self, n: int, value: int) -> None:
        self.dregs[n] = value & _M32

    def a(self, n: int) -> int:
        return self.aregs[n]

    def set_a(self, n: int, value: int) -> None:
        self.aregs[n] = value & _M32

    def sp(self) -> int:
        return self.aregs[7]

    def set_sp(self, value: int) -> None:
        self.aregs[7] = value & _M32

    def set_sr(self, value: int) -> None:
        self.sr = value & 0xFFFF

    def reset(self, bus) -> None:
        """Load SP and PC from the reset vectors and enter supervisor mode."""
        self.set_sp(bus.read_long(0))
        self.pc = bus.read_long(4)
        self.sr = 0x2700
        self.stopped = False

    # ── exceptions ───────────────────────────────────────────────
    def _exception(self, bus, vector: int, stacked_pc: int) -> None:
        old = self.sr
        self.sr = (self.sr | 0x2000) & ~0x8000
        self._push(bus, 2, vector * 4)
        self._push(bus, 4, stacked_pc)
        self._push(bus, 2, old)
        self.pc = bus.read_long(vector * 4)

    def take_trap_exception(self, bus, trap_num: int) -> None:
        self._exception(bus, TRAP_VECTOR_BASE + trap_num, self.pc)

    def take_aline_exception(self, bus) -> None:
        self._exception(bus, ALINE_VECTOR, self.pc)

    def take_fline_exception(self, bus) -> None:
        self._exception(bus, FLINE_VECTOR, self.pc)

    # ── fetch / stack ────────────────────────────────────────────
    def _fetch16(self, bus) -> int:
        v = bus.read_word(self.pc)
        self.pc = (self.pc + 2) & _M32
        return v

    def _fetch32(self, bus) -> int:
        v = bus.read_long(self.pc)
        self.pc = (self.pc + 4) & _M32
        return v

    def _push(self, bus, size: int, value: int) -> None:
        self.set_sp(self.sp() - size)
        self._write(bus, ("m", self.sp()), size, value)

    def _pop(self, bus, size: int) -> int:
        v = self._read(bus, ("m", self.sp()), size)
        self.set_sp(self.sp() + size)
        return v

    # ── effective addresses ──────────────────────────────────────
    def _index(self, bus, base: int) -> int:
        ext = self._fetch16(bus)
        if ext & 0x100:
            raise _Illegal
        reg = (ext >> 12) & 7
        xv = self.aregs[reg] if ext & 0x8000 else self.dregs[reg]
        xv = _sext(xv, 4) if ext & 0x800 else _sext(xv, 2)
        scale = 1 << ((ext >> 9) & 3)
        return (base + _sext(ext, 1) + xv * scale) & _M32

    def _ea_addr(self, bus, mode: int, reg: int) -> int:
        if mode == 2:
            return self.aregs[reg]
        if mode == 5:
            return (self.aregs[reg] + _sext(self._fetch16(bus), 2)) & _M32
        if mode == 6:
            return self._index(bus, self.aregs[reg])
        if mode == 7:
            if reg == 0:
                return _sext(self._fetch16(bus), 2) & _M32
            if reg == 1:
                return self._fetch32(bus)
            if reg == 2:
                base = self.pc
                return (base + _sext(self._fetch16(bus), 2)) & _M32
            if reg == 3:
                return self._index(bus, self.pc)
        raise _Illegal

    def _ea(self, bus, mode: int, reg: int, size: int):
        if mode == 0:
            return ("d", reg)
        if mode == 1:
            return ("a", reg)
        if mode in (3, 4):
            step = 2 if reg == 7 and size == 1 else size
            addr = self.aregs[reg]
            if mode == 3:
                self.aregs[reg] = (addr + step) & _M32
                return ("m", addr)
            self.aregs[reg] = (addr - step) & _M32
            return ("m", self.aregs[reg])
        if mode == 7 and reg == 4:
            if size == 4:
                return ("i", self._fetch32(bus))
            return ("i", self._fetch16(bus) & _MASK[size])
        return ("m", self._ea_addr(bus, mode, reg))

    def _read(self, bus, loc, size: int) -> int:
        kind, v = loc
        if kind == "d":
            return self.dregs[v] & _MASK[size]
        if kind == "a":
            return self.aregs[v] & _MASK[size]
        if kind == "i":
            return v
        if size == 1:
            return bus.read_byte(v)
        if size == 2:
            return bus.read_word(v)
        return bus.read_long(v)

    def _write(self, bus, loc, size: int, value: int) -> None:
        kind, v = loc
        mask = _MASK[size]
        if kind == "d":
            self.dregs[v] = ((self.dregs[v] & ~mask) | (value & mask)) & _M32
        elif kind == "a":
            self.aregs[v] = value & _M32
        elif kind == "i":
            raise _Illegal
        elif size == 1:
            bus.write_byte(v, value)
        elif size == 2:
            bus.write_word(v, value)
        else:
            bus.write_long(v, value)

    # ── flags ────────────────────────────────────────────────────
    def _nz(self, r: int, size: int) -> int:
        return (_N if r & _MSB[size] else 0) | (0 if r & _MASK[size] else _Z)

    def _logic_flags(self, r: int, size: int) -> None:
        self.sr = (self.sr & ~0x0F) | self._nz(r, size)

    def _arith_flags(self, r: int, size: int, v: bool, c: bool, set_x: bool) -> None:
        ccr = self._nz(r, size) | (_V if v else 0) | (_C if c else 0)
        keep = ~0x1F if set_x else ~0x0F
        self.sr = (self.sr & keep) | ccr | (_X if set_x and c else 0)

    def _add(self, a: int, b: int, size: int, set_x: bool = True) -> int:
        r = (a + b) & _MASK[size]
        v = bool((a ^ r) & (b ^ r) & _MSB[size])
        self._arith_flags(r, size, v, a + b > _MASK[size], set_x)
        return r

    def _sub(self, a: int, b: int, size: int, set_x: bool = True) -> int:
        r = (a - b) & _MASK[size]
        v = bool((a ^ b) & (a ^ r) & _MSB[size])
        self._arith_flags(r, size, v, b > a, set_x)
        return r

    def _cond(self, cc: int) -> bool:
        n, z = bool(self.sr & _N), bool(self.sr & _Z)
        v, c = bool(self.sr & _V), bool(self.sr & _C)
        return [
            True, False, not c and not z, c or z, not c, c, not z, z,
            not v, v, not n, n, n == v, n != v, n == v and not z, z or n != v,
        ][cc]

    # ── execution ────────────────────────────────────────────────
    def step(self, bus) -> StepResult:
        """Execute one instruction and report how it ended."""
        if self.stopped:
            return StepResult(StepKind.STOPPED)
        start = self.pc
        op = self._fetch16(bus)
        line = op >> 12
        if line == 0xA:
            self.pc = start
            return StepResult(StepKind.ALINE_TRAP, opcode=op)
        if line == 0xF:
            self.pc = start
            return StepResult(StepKind.FLINE_TRAP, opcode=op)
        try:
            result = self._execute(bus, op, start, line)
        except _Illegal:
            self.pc = start
            return StepResult(StepKind.ILLEGAL_INSTRUCTION, opcode=op)
        return result or _OK

    def _execute(self, bus, op: int, start: int, line: int):
        mode, reg = (op >> 3) & 7, op & 7
        if line == 0:
            return self._line0(bus, op, mode, reg)
        if line in (1, 2, 3):
            size = {1: 1, 3: 2, 2: 4}[line]
            val = self._read(bus, self._ea(bus, mode, reg, size), size)
            dmode, dreg = (op >> 6) & 7, (op >> 9) & 7
            if dmode == 1:
                if size == 1:
                    raise _Illegal
                self.aregs[dreg] = _sext(val, size) & _M32
                return None
            self._write(bus, self._ea(bus, dmode, dreg, size), size, val)
            self._logic_flags(val, size)
            return None
        if line == 4:
            return self._line4(bus, op, mode, reg)
        if line == 5:
            return self._line5(bus, op, mode, reg, start)
        if line == 6:
            return self._branch(bus, op, start)
        if line == 7:
            if op & 0x100:
                raise _Illegal
            val = _sext(op, 1) & _M32
            self.dregs[(op >> 9) & 7] = val
            self._logic_flags(val, 4)
            return None
        if line == 0xE:
            return self._shift(op)
        return self._alu(bus, op, line, mode, reg)

    def _imm(self, bus, size: int) -> int:
        return self._fetch32(bus) if size == 4 else self._fetch16(bus) & _MASK[size]

    def _line0(self, bus, op, mode, reg):
        kind, sbits = (op >> 9) & 7, (op >> 6) & 3
        if op & 0x100 or sbits == 3 or kind in (4, 7):
            raise _Illegal
        size = (1, 2, 4)[sbits]
        if mode == 7 and reg == 4 and kind in (0, 1, 5):
            imm = self._imm(bus, size)
            mask = 0xFF if size == 1 else 0xFFFF
            cur = self.sr & mask
            new = {0: cur | imm, 1: cur & imm, 5: cur ^ imm}[kind]
            self.sr = (self.sr & ~mask) | (new & mask)
            return None
        imm = self._imm(bus, size)
        loc = self._ea(bus, mode, reg, size)
        dst = self._read(bus, loc, size)
        if kind == 6:
            self._sub(dst, imm, size, set_x=False)
            return None
        if kind == 2:
            r = self._sub(dst, imm, size)
        elif kind == 3:
            r = self._add(dst, imm, size)
        else:
            r = {0: dst | imm, 1: dst & imm, 5: dst ^ imm}[kind]
            self._logic_flags(r, size)
        self._write(bus, loc, size, r)
        return None

    def _movem(self, bus, op, mode, reg):
        size = 4 if op & 0x40 else 2
        mask = self._fetch16(bus)
        regs = [("d", i) for i in range(8)] + [("a", i) for i in range(8)]
        to_regs = bool(op & 0x400)
        if not to_regs and mode == 4:
            addr = self.aregs[reg]
            for i in range(15, -1, -1):
                if mask & (1 << (15 - i)):
                    addr = (addr - size) & _M32
                    self._write(bus, ("m", addr), size, self._read(bus, regs[i], 4))
            self.aregs[reg] = addr
            return None
        addr = self.aregs[reg] if mode == 3 else self._ea_addr(bus, mode, reg)
        for i in range(16):
            if mask & (1 << i):
                if to_regs:
                    val = _sext(self._read(bus, ("m", addr), size), size)
                    kind, n = regs[i]
                    (self.dregs if kind == "d" else self.aregs)[n] = val & _M32
                else:
                    self._write(bus, ("m", addr), size, self._read(bus, regs[i], 4))
                addr = (addr + size) & _M32
        if mode == 3:
            self.aregs[reg] = addr
        return None

    def _line4(self, bus, op, mode, reg):
        if op == 0x4E71:
            return None
        if op == 0x4E75:
            self.pc = self._pop(bus, 4)
            return None
        if op == 0x4E73:
            self.sr = self._pop(bus, 2)
            self.pc = self._pop(bus, 4)
            self._pop(bus, 2)
            return None
        if op == 0x4E72:
            self.sr = self._fetch16(bus)
            self.stopped = True
            return None
        if op & 0xFFF0 == 0x4E40:
            return StepResult(StepKind.TRAP_INSTRUCTION, opcode=op, trap_num=op & 0xF)
        if op & 0xFFF8 == 0x4E50:
            disp = _sext(self._fetch16(bus), 2)
            self._push(bus, 4, self.aregs[reg])
            self.aregs[reg] = self.sp()
            self.set_sp(self.sp() + disp)
            return None
        if op & 0xFFF8 == 0x4E58:
            self.set_sp(self.aregs[reg])
            self.aregs[reg] = self._pop(bus, 4)
            return None
        if op & 0xFFC0 in (0x4E80, 0x4EC0):
            target = self._ea_addr(bus, mode, reg)
            if op & 0xFFC0 == 0x4E80:
                self._push(bus, 4, self.pc)
            self.pc = target
            return None
        if op & 0xF1C0 == 0x41C0:
            self.aregs[(op >> 9) & 7] = self._ea_addr(bus, mode, reg)
            return None
        if op & 0xFFC0 == 0x4840:
            if mode == 0:
                v = self.dregs[reg]
                r = ((v << 16) | (v >> 16)) & _M32
                self.dregs[reg] = r
                self._logic_flags(r, 4)
            else:
                self._push(bus, 4, self._ea_addr(bus, mode, reg))
            return None
        if op & 0xFFB8 == 0x4880 or op & 0xFFF8 == 0x49C0:
            if op & 0xFFF8 == 0x49C0:
                r, size = _sext(self.dregs[reg], 1), 4
            elif op & 0x40:
                r, size = _sext(self.dregs[reg], 2), 4
            else:
                r, size = _sext(self.dregs[reg], 1), 2
            self._write(bus, ("d", reg), size, r)
            self._logic_flags(r & _MASK[size], size)
            return None
        if op & 0xFB80 == 0x4880:
            return self._movem(bus, op, mode, reg)
        if op & 0xFFC0 == 0x40C0:
            self._write(bus, self._ea(bus, mode, reg, 2), 2, self.sr)
            return None
        if op & 0xFFC0 in (0x44C0, 0x46C0):
            val = self._read(bus, self._ea(bus, mode, reg, 2), 2)
            if op & 0xFFC0 == 0x46C0:
                self.sr = val
            else:
                self.sr = (self.sr & 0xFF00) | (val & 0xFF)
            return None
        sbits = (op >> 6) & 3
        kind = op & 0xFF00
        if sbits == 3 or kind not in (0x4200, 0x4400, 0x4600, 0x4A00):
            raise _Illegal
        size = (1, 2, 4)[sbits]
        loc = self._ea(bus, mode, reg, size)
        if kind == 0x4200:
            self._write(bus, loc, size, 0)
            self._logic_flags(0, size)
            return None
        val = self._read(bus, loc, size)
        if kind == 0x4A00:
            self._logic_flags(val, size)
            return None
        if kind == 0x4400:
            r = self._sub(0, val, size)
        else:
            r = ~val & _MASK[size]
            self._logic_flags(r, size)
        self._write(bus, loc, size, r)
        return None

    def _line5(self, bus, op, mode, reg, start):
        cc = (op >> 8) & 0xF
        if (op >> 6) & 3 == 3:
            if mode == 1:
                disp = _sext(self._fetch16(bus), 2)
                if not self._cond(cc):
                    cnt = (self.dregs[reg] - 1) & 0xFFFF
                    self._write(bus, ("d", reg), 2, cnt)
                    if cnt != 0xFFFF:
                        self.pc = (start + 2 + disp) & _M32
                return None
            loc = self._ea(bus, mode, reg, 1)
            self._write(bus, loc, 1, 0xFF if self._cond(cc) else 0)
            return None
        size = (1, 2, 4)[(op >> 6) & 3]
        data = (op >> 9) & 7 or 8
        sub = bool(op & 0x100)
        if mode == 1:
            delta = -data if sub else data
            self.aregs[reg] = (self.aregs[reg] + delta) & _M32
            return None
        loc = self._ea(bus, mode, reg, size)
        val = self._read(bus, loc, size)
        r = self._sub(val, data, size) if sub else self._add(val, data, size)
        self._write(bus, loc, size, r)
        return None

    def _branch(self, bus, op, start):
        cc = (op >> 8) & 0xF
        disp = op & 0xFF
        if disp == 0:
            disp = _sext(self._fetch16(bus), 2)
        elif disp == 0xFF:
            disp = _sext(self._fetch32(bus), 4)
        else:
            disp = _sext(disp, 1)
        target = (start + 2 + disp) & _M32
        if cc == 1:
            self._push(bus, 4, self.pc)
            self.pc = target
        elif self._cond(cc):
            self.pc = target
        return None

    def _shift(self, op):
        sbits = (op >> 6) & 3
        kind = (op >> 3) & 3
        if sbits == 3 or kind == 2:
            raise _Illegal
        size = (1, 2, 4)[sbits]
        bits, mask, msb = size * 8, _MASK[size], _MSB[size]
        reg = op & 7
        cnt_field = (op >> 9) & 7
        count = self.dregs[cnt_field] & 63 if op & 0x20 else (cnt_field or 8)
        left = bool(op & 0x100)
        v = self.dregs[reg] & mask
        carry = vflag = 0
        for _ in range(count):
            if left:
                carry = (v >> (bits - 1)) & 1
                nv = ((v << 1) | (carry if kind == 3 else 0)) & mask
                if kind == 0 and (nv ^ v) & msb:
                    vflag = 1
                v = nv
            else:
                carry = v & 1
                if kind == 0:
                    v = (v >> 1) | (v & msb)
                elif kind == 1:
                    v >>= 1
                else:
                    v = (v >> 1) | (carry << (bits - 1))
        self._write(None, ("d", reg), size, v)
        ccr = self._nz(v, size) | (_V if vflag else 0) | (_C if count and carry else 0)
        if kind != 3 and count:
            self.sr = (self.sr & ~0x1F) | ccr | (_X if carry else 0)
        else:
            self.sr = (self.sr & ~0x0F) | ccr
        return None

    def _alu(self, bus, op, line, mode, reg):
        dreg = (op >> 9) & 7
        opmode = (op >> 6) & 7
        if opmode in (3, 7):
            if line in (9, 0xB, 0xD):
                size = 4 if opmode == 7 else 2
                src = _sext(self._read(bus, self._ea(bus, mode, reg, size), size), size)
                an = self.aregs[dreg]
                if line == 0xB:
                    self._sub(an, src & _M32, 4, set_x=False)
                else:
                    delta = src if line == 0xD else -src
                    self.aregs[dreg] = (an + delta) & _M32
                return None
            return self._muldiv(bus, op, line, mode, reg, dreg, opmode == 7)
        size = (1, 2, 4)[opmode & 3]
        to_ea = opmode >= 4
        if to_ea and mode in (0, 1) and line != 0xB:
            raise _Illegal
        if line == 0xB and to_ea and mode == 1:
            raise _Illegal
        loc = self._ea(bus, mode, reg, size)
        src = self._read(bus, loc, size)
        dn = self.dregs[dreg] & _MASK[size]
        if line == 0xB and not to_ea:
            self._sub(dn, src, size, set_x=False)
            return None
        a, b = (src, dn) if to_ea else (dn, src)
        if line == 9:
            r = self._sub(a, b, size)
        elif line == 0xD:
            r = self._add(a, b, size)
        else:
            r = {8: a | b, 0xC: a & b, 0xB: a ^ b}[line]
            self._logic_flags(r, size)
        self._write(bus, loc if to_ea else ("d", dreg), size, r)
        return None

    def _muldiv(self, bus, op, line, mode, reg, dreg, signed):
        src = self._read(bus, self._ea(bus, mode, reg, 2), 2)
        dn = self.dregs[dreg]
        if line == 0xC:
            r = (_sext(dn, 2) * _sext(src, 2) if signed else (dn & 0xFFFF) * src) & _M32
            self.dregs[dreg] = r
            self._logic_flags(r, 4)
            return None
        if src == 0:
            raise _Illegal
        if signed:
            num, den = _sext(dn, 4), _sext(src, 2)
            q = abs(num) // abs(den)
            q = q if (num >= 0) == (den > 0) else -q
            rem = num - q * den
            overflow = not -0x8000 <= q <= 0x7FFF
        else:
            q, rem = divmod(dn, src)
            overflow = q > 0xFFFF
        if overflow:
            self.sr = (self.sr & ~0x0F) | _V
            return None
        r = ((rem & 0xFFFF) << 16) | (q & 0xFFFF)
        self.dregs[dreg] = r
        self._logic_flags(q & 0xFFFF, 2)
        return None


def short_circuit_rts(cpu: CpuCore, bus, d0: int) -> None:
    """Return from the current subroutine immediately with ``d0`` as result."""
    sp = cpu.sp()
    ret = bus.read_long(sp)
    cpu.set_d(0, d0)
    cpu.pc = ret
    cpu.set_sp(sp + 4)