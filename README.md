# retrops

`retrops` emulates the HP C2089A PostScript cartridge. It runs the
cartridge's own firmware on a small 680x0 integer interpreter, feeds
it a PostScript job through hooks on the firmware's host interface,
and captures each page the firmware renders as a 1-bit raster.

You supply the 2 MB cartridge ROM image yourself; the package does not
ship one.

## Installing

```
pip install .
```

The package needs only the Python standard library (Python 3.10 or
later). To run the tests:

```
pip install ".[test]"
pytest
```

## Rendering a job

```python
from pathlib import Path

from retrops.cfg import Cfg, CfgInputs, ConfigError
from retrops.cpu import CpuCore
from retrops.emulator import RenderError, render
from retrops.output import ListSink, NullLogger, pbm_to_png

rom = Path("c2089a.bin").read_bytes()
job = Path("document.ps").read_bytes()

try:
    cfg = Cfg.from_inputs(CfgInputs(paper_dpi=150, exit_after=1, quiet=True))
except ConfigError as exc:
    raise SystemExit(f"bad configuration: {exc}")

sink = ListSink()
try:
    result = render(rom, job, cfg, NullLogger(), sink, CpuCore())
except RenderError as exc:
    raise SystemExit(f"render failed: {exc}")

for page in sink.pages:
    png = pbm_to_png(page.width, page.height, page.pbm)
    Path(f"page_{page.index:02}.png").write_bytes(png)

print(result.pages, "page(s) in", result.insns, "instructions")
```

`retrops.emulator.render(rom, ps_input, cfg, log=None, sink=None, cpu=None)`
runs the job. `log` defaults to a `NullLogger`, `sink` to a fresh
`ListSink` and `cpu` to a new `CpuCore`. It raises `RenderError` when
the ROM is not exactly 2 MB, or when the CPU executes `STOP` or meets
an instruction the interpreter does not support. It returns a
`RenderResult` with:

- `pages` — how many pages reached the sink;
- `wedged` — a watchdog stopped the run for lack of progress (no new
  page in 500 M instructions, or none within 30 M instructions of a
  firmware `fatal_assert`); pages already emitted are still good;
- `panicked` — the firmware hit its fatal panic trap;
- `insns` — instructions executed;
- `ram_snapshot` — a copy of cartridge RAM, when requested.

A run also ends when the input is drained and at least one page has
been captured, when `exit_after` pages have been captured, or 5 M
instructions after the firmware reports a PostScript error.

The emulated machine allocates 128 MB of RAM, and the interpreter is
pure Python, so a full page takes a long time to render.

`retrops.emulator.build_prolog(cfg, log)` returns the PostScript sent
ahead of the job (a paper-sized `/clippath`, plus the LJ III clipping
and the `setscreen` line when those are configured), and
`boot_cart(bus, cpu=None)` sets up the boot stack frame and CPU state
on a `retrops.bus.Bus`.

## Configuration

`CfgInputs` holds what a user would choose; `Cfg.from_inputs` checks it
and resolves it into a frozen `Cfg`, raising `ConfigError` (a
`ValueError`) on bad input.

- `paper_w`, `paper_h` — paper size in PostScript points (default
  612 × 792, US Letter).
- `paper_dpi` — render resolution (default 300).
- `paper_w_px`, `paper_h_px` — raw pixel sizes; these win over the
  size derived from points and DPI.
- `lj3` — LaserJet III mode: Letter at 300 DPI, clipped to the
  printer's 0.25" imageable area, with emitted pages cropped by the
  same margin. It cannot be combined with `paper_w`, `paper_h` or
  `paper_dpi`.
- `exit_after` — stop after this many pages.
- `max_insns` — hard cap on executed instructions (unlimited by
  default; the watchdogs catch runs that stop making progress).
- `lpi`, `screen_angle` — force a halftone screen through a
  `setscreen` prolog.
- `ram_snapshot`, `ram_snapshot_force` — capture cartridge RAM on the
  first band write, or on every band write (the last one wins).
- `quiet` — suppress emulator-side `info` lines.

Pages wider or taller than 16000 pixels are rejected.

## Pages and logs

Each page arrives at the sink as a `CapturedPage` with `index`,
`width`, `height` and `pbm`, the packed P4 raster body (MSB first,
1 = black, rows padded to whole bytes). Prefix it with
`b"P4\n%d %d\n" % (width, height)` for a PBM file, or pass it to
`pbm_to_png(width, height, pbm)` for a 1-bit grayscale PNG; that
raises `ValueError` if the body is too short or a dimension is zero.

To receive pages as they appear, subclass `PageSink` and implement
`emit_page`; `ListSink` keeps them in its `pages` list. To see
diagnostics, subclass `Logger`; its methods split the stream by kind:
`info`, `lcd` (text the firmware sends to the front-panel display),
`ps_out` (the PostScript interpreter's own output, including error
reports), `hint`, `fatal_assert` and `panic`. `NullLogger` drops every
line and only counts them in `discarded`.

## What it does not do

There is no command-line program: rendering is done from Python.
Nothing is written to disk by the package; saving pages, PNGs or RAM
snapshots is up to the caller. No ROM image is bundled.