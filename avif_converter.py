import os
import math
import re
import shutil
import sys
import time
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Tuple
import click
from rich.console import Console
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TaskProgressColumn, MofNCompleteColumn
from rich.prompt import Confirm, IntPrompt, Prompt
from rich.table import Table
import concurrent.futures
import queue
import threading
from PIL import Image

__version__ = "1.0.0"

console = Console()

# Configure logging
logger = logging.getLogger("avif_converter")

# =============================================================================
# Constants
# =============================================================================

TARGET_EXTENSION = '.avif'

DEFAULT_INPUT = './input'
DEFAULT_OUTPUT = './output'
DEFAULT_QUALITY = 80
DEFAULT_EFFORT = 4
DEFAULT_PATTERN = '*.{png,jpg,jpeg,webp}'

# Directories never searched for images
IGNORED_DIRECTORIES = {'node_modules'}

# Pillow format names grouped by fallback policy
JPEG_FORMATS = {'jpeg', 'mpo'}
PNG_FORMATS = {'png'}
WEBP_FORMATS = {'webp'}

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

# =============================================================================
# Validation
# =============================================================================

def validate_quality(quality: int) -> Tuple[bool, str]:
    """Validate encode quality value."""
    if not isinstance(quality, int) or not 0 <= quality <= 100:
        return False, f"Quality must be between 0 and 100 (got {quality})"
    return True, ""

def validate_effort(effort: int) -> Tuple[bool, str]:
    """Validate AVIF encoder effort value."""
    if not isinstance(effort, int) or not 0 <= effort <= 9:
        return False, f"Effort must be between 0 and 9 (got {effort})"
    return True, ""

def validate_concurrency(concurrency: int) -> Tuple[bool, str]:
    """Validate the number of concurrent jobs."""
    if not isinstance(concurrency, int) or concurrency < 1:
        return False, f"Concurrency must be at least 1 (got {concurrency})"
    return True, ""

# =============================================================================
# Data Model
# =============================================================================

@dataclass(frozen=True)
class Config:
    """
    Conversion settings, built once before any job runs.

    `resize` is accepted and carried along but never applied.
    `pattern` is only used by file discovery.
    """
    quality: int = DEFAULT_QUALITY
    effort: int = DEFAULT_EFFORT
    resize: Optional[str] = None
    pattern: str = DEFAULT_PATTERN

    def __post_init__(self):
        for valid, msg in (validate_quality(self.quality), validate_effort(self.effort)):
            if not valid:
                raise ValueError(msg)
        if not self.pattern:
            raise ValueError("Pattern must not be empty")

    @property
    def avif_speed(self) -> int:
        """AVIF encoder speed (0 slowest, 9 fastest) for the configured effort."""
        return 9 - self.effort

    @property
    def palette_colors(self) -> int:
        """Palette size used for PNG fallbacks, scaled by quality."""
        return max(2, min(256, round(256 * self.quality / 100)))

@dataclass(frozen=True)
class Job:
    """One discovered input file and where its artifacts go."""
    input_path: Path
    input_root: Path
    output_root: Path
    config: Config

    @property
    def relative_path(self) -> Path:
        return self.input_path.relative_to(self.input_root)

    @property
    def output_dir(self) -> Path:
        return self.output_root / self.relative_path.parent

    @property
    def primary_path(self) -> Path:
        return self.output_dir / (self.input_path.stem + TARGET_EXTENSION)

    @property
    def fallback_path(self) -> Path:
        return self.output_dir / self.input_path.name

@dataclass(frozen=True)
class Artifact:
    """A file written by a job, with its size measured after the write."""
    path: Path
    size: int
    format: Optional[str] = None

@dataclass(frozen=True)
class ConversionResult:
    """Outcome of one job. Failures carry an error message and no artifacts."""
    input_path: Path
    success: bool
    original_size: int = 0
    primary: Optional[Artifact] = None
    fallback: Optional[Artifact] = None
    duration_ms: int = 0
    error: Optional[str] = None

    @classmethod
    def failed(cls, input_path: Path, error: str) -> "ConversionResult":
        return cls(input_path=input_path, success=False, error=error)

def build_jobs(files: Iterable[Path], input_root: Path, output_root: Path, config: Config) -> List[Job]:
    """Wrap discovered files into jobs, keeping discovery order."""
    return [Job(Path(f), input_root, output_root, config) for f in files]

# =============================================================================
# Filesystem Utilities
# =============================================================================

def expand_braces(pattern: str) -> List[str]:
    """
    Expand `{a,b}` alternations in a glob pattern.
    '*.{png,jpg}' -> ['*.png', '*.jpg']
    """
    match = re.search(r'\{([^{}]*)\}', pattern)
    if not match:
        return [pattern]

    head, tail = pattern[:match.start()], pattern[match.end():]
    expanded = []
    for option in match.group(1).split(','):
        expanded.extend(expand_braces(head + option + tail))
    return expanded

def find_images(directory: Path, pattern: str = DEFAULT_PATTERN, exclude: Optional[Path] = None) -> List[Path]:
    """
    Recursively find files matching the pattern under directory.
    Files under `exclude` are skipped. Returns sorted absolute paths.
    """
    directory = Path(directory).absolute()
    exclude = Path(exclude).absolute() if exclude else None
    found = set()

    for sub_pattern in expand_braces(pattern):
        for path in directory.rglob(sub_pattern):
            if IGNORED_DIRECTORIES.intersection(path.relative_to(directory).parts):
                continue
            if exclude and (path == exclude or exclude in path.parents):
                continue
            if path.is_file():
                found.add(path)

    return sorted(found)

def ensure_directory(path: Path, create_if_missing: bool = True):
    """Make sure a directory exists, creating it (and parents) if allowed."""
    path = Path(path)
    if path.is_dir():
        return
    if not create_if_missing:
        raise FileNotFoundError(f"Directory not found: {path}")
    path.mkdir(parents=True, exist_ok=True)

def clean_directory(path: Path):
    """Remove a directory and everything in it, then recreate it empty."""
    path = Path(path)
    try:
        if path.exists():
            shutil.rmtree(path)
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise OSError(f"Failed to clean directory: {path}. {e}") from e

def format_bytes(size: int) -> str:
    """Return human readable file size string."""
    if size == 0:
        return "0 Bytes"
    power = 2**10
    n = 0
    power_labels = {0: 'Bytes', 1: 'KB', 2: 'MB', 3: 'GB'}
    while abs(size) >= power and n < 3:
        size /= power
        n += 1
    return f"{round(size, 2):g} {power_labels[n]}"

# =============================================================================
# Image Conversion
# =============================================================================

def _has_alpha(img: Image.Image) -> bool:
    return img.mode in ('RGBA', 'LA', 'PA') or 'transparency' in img.info

def _to_rgb(img: Image.Image) -> Image.Image:
    """Convert to RGB or RGBA, keeping transparency when present."""
    if img.mode in ('RGB', 'RGBA'):
        return img
    return img.convert('RGBA' if _has_alpha(img) else 'RGB')

def save_primary(img: Image.Image, out_file: Path, config: Config):
    """Encode the AVIF artifact with full 4:4:4 chroma."""
    _to_rgb(img).save(
        out_file,
        format='AVIF',
        quality=config.quality,
        speed=config.avif_speed,
        subsampling='4:4:4',
    )

def save_fallback(img: Image.Image, source_format: str, in_file: Path, out_file: Path, config: Config):
    """Re-encode the image in its own format, compressed."""
    if source_format in JPEG_FORMATS:
        if img.mode not in ('RGB', 'L', 'CMYK'):
            img = img.convert('RGB')
        img.save(out_file, format='JPEG', quality=config.quality, optimize=True, progressive=True)

    elif source_format in PNG_FORMATS:
        source = _to_rgb(img)
        # MEDIANCUT cannot quantize RGBA
        method = Image.Quantize.FASTOCTREE if source.mode == 'RGBA' else Image.Quantize.MEDIANCUT
        img = source.quantize(colors=config.palette_colors, method=method)
        img.save(out_file, format='PNG', optimize=True, compress_level=9)

    elif source_format in WEBP_FORMATS:
        img.save(out_file, format='WEBP', quality=config.quality)

    elif source_format.upper() in Image.SAVE:
        save_kwargs = {}
        if getattr(img, "is_animated", False):
            save_kwargs['save_all'] = True
        img.save(out_file, format=source_format.upper(), **save_kwargs)

    else:
        # Pillow can read but not write this format
        shutil.copy2(in_file, out_file)

def convert_image(job: Job) -> ConversionResult:
    """
    Convert one image into an AVIF artifact plus a same-format fallback.

    Never raises: any error is returned as a failed result. Artifacts written
    before the error are left on disk.
    """
    in_file = job.input_path
    try:
        ensure_directory(job.output_dir)
        original_size = in_file.stat().st_size

        start = time.monotonic()
        with Image.open(in_file) as img:
            img.load()
            source_format = (img.format or '').lower()

            save_primary(img, job.primary_path, job.config)
            primary_size = job.primary_path.stat().st_size

            save_fallback(img, source_format, in_file, job.fallback_path, job.config)
            fallback_size = job.fallback_path.stat().st_size
        duration_ms = int((time.monotonic() - start) * 1000)

    except Exception as e:
        logger.warning(f"Failed to convert {in_file}: {e}")
        return ConversionResult.failed(in_file, str(e))

    logger.debug(f"Converted {job.relative_path} in {duration_ms} ms")
    return ConversionResult(
        input_path=in_file,
        success=True,
        original_size=original_size,
        primary=Artifact(job.primary_path, primary_size, 'avif'),
        fallback=Artifact(job.fallback_path, fallback_size, source_format),
        duration_ms=duration_ms,
    )

# =============================================================================
# Scheduler
# =============================================================================

def default_concurrency() -> int:
    """Number of jobs to run at once when not configured."""
    return os.cpu_count() or 4

class InFlightCounter:
    """Counts jobs currently running and remembers the peak."""

    def __init__(self):
        self.lock = threading.Lock()
        self.current = 0
        self.peak = 0

    def enter(self):
        with self.lock:
            self.current += 1
            self.peak = max(self.peak, self.current)

    def leave(self):
        with self.lock:
            self.current -= 1

def worker_loop(
    job_queue: queue.Queue,
    result_queue: queue.Queue,
    convert: Callable[[Job], ConversionResult],
    in_flight: InFlightCounter
):
    """Pull jobs until the queue is drained, pushing one result per job."""
    while True:
        try:
            job = job_queue.get_nowait()
        except queue.Empty:
            return

        in_flight.enter()
        try:
            result = convert(job)
        except Exception as e:
            logger.exception(f"Unexpected error converting {job.input_path}")
            result = ConversionResult.failed(job.input_path, str(e))
        finally:
            in_flight.leave()

        result_queue.put(result)
        job_queue.task_done()

class ConversionScheduler:
    """
    Runs jobs on a fixed pool of worker threads.

    Jobs are queued in input order and each free worker takes the next one,
    so at most `concurrency` jobs are ever running. Results are collected on
    the calling thread in completion order.
    """

    def __init__(self, concurrency: Optional[int] = None, convert: Callable[[Job], ConversionResult] = convert_image):
        if concurrency is None:
            concurrency = default_concurrency()
        valid, msg = validate_concurrency(concurrency)
        if not valid:
            raise ValueError(msg)
        self.concurrency = concurrency
        self.convert = convert
        self.in_flight = InFlightCounter()

    @property
    def peak_in_flight(self) -> int:
        return self.in_flight.peak

    def run(self, jobs: List[Job], on_result: Optional[Callable[[ConversionResult], None]] = None) -> List[ConversionResult]:
        results = []
        if not jobs:
            return results

        job_queue = queue.Queue()
        for job in jobs:
            job_queue.put(job)
        result_queue = queue.Queue()

        workers = min(self.concurrency, len(jobs))
        logger.debug(f"Starting {workers} workers for {len(jobs)} jobs")

        with concurrent.futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ImageWorker") as executor:
            for _ in range(workers):
                executor.submit(worker_loop, job_queue, result_queue, self.convert, self.in_flight)

            for _ in range(len(jobs)):
                result = result_queue.get()
                results.append(result)
                if on_result:
                    on_result(result)

        return results

# =============================================================================
# Progress
# =============================================================================

def create_progress(console: Console) -> Progress:
    return Progress(
        SpinnerColumn(),
        BarColumn(),
        TaskProgressColumn(),
        MofNCompleteColumn(),
        TextColumn("{task.description}"),
        TextColumn("[dim]{task.fields[size_info]}[/dim]"),
        console=console
    )

class ProgressReporter:
    """Advances the progress bar once per completed job."""

    def __init__(self, progress: Progress, total: int):
        self.progress = progress
        self.task_id = progress.add_task("Preparing...", total=total, size_info="")

    def __call__(self, result: ConversionResult):
        if result.success:
            size_info = f"{format_bytes(result.original_size)} → {format_bytes(result.primary.size)}"
        else:
            size_info = "Error"
        self.progress.update(
            self.task_id,
            advance=1,
            description=escape(result.input_path.name),
            size_info=size_info
        )

# =============================================================================
# Summary Report
# =============================================================================

def reduction_percent(artifact_total: int, original_total: int) -> int:
    """Percent saved relative to the original; negative when the artifact is larger."""
    if original_total <= 0:
        return 0
    # Half rounds up, -2.5 -> -2
    return math.floor(100 * (1 - artifact_total / original_total) + 0.5)

@dataclass(frozen=True)
class AggregateStats:
    """Totals over a finished batch."""
    success_count: int = 0
    fail_count: int = 0
    total_original: int = 0
    total_primary: int = 0
    total_fallback: int = 0
    failures: Tuple[Tuple[Path, str], ...] = field(default_factory=tuple)

    @property
    def total(self) -> int:
        return self.success_count + self.fail_count

    @property
    def primary_reduction(self) -> int:
        return reduction_percent(self.total_primary, self.total_original)

    @property
    def fallback_reduction(self) -> int:
        return reduction_percent(self.total_fallback, self.total_original)

def aggregate(results: Iterable[ConversionResult]) -> AggregateStats:
    """Reduce results to totals. Totals do not depend on result order."""
    results = list(results)
    succeeded = [r for r in results if r.success]
    return AggregateStats(
        success_count=len(succeeded),
        fail_count=len(results) - len(succeeded),
        total_original=sum(r.original_size for r in results),
        total_primary=sum(r.primary.size for r in succeeded),
        total_fallback=sum(r.fallback.size for r in succeeded),
        failures=tuple((r.input_path, r.error or "") for r in results if not r.success),
    )

def print_summary(stats: AggregateStats, duration_ms: int, out: Console = console):
    """Print final processing summary."""
    out.print()
    if stats.fail_count == 0:
        out.print("[bold green]✓ Done![/bold green]")
    else:
        out.print(f"[bold yellow]⚠ Done ({stats.fail_count} errors)[/bold yellow]")

    table = Table(show_header=False, box=None)
    table.add_column("Label", style="dim")
    table.add_column("Value", style="bold")

    table.add_row("Converted:", str(stats.success_count))
    table.add_row("Failed:", str(stats.fail_count))
    table.add_row("Time:", f"{duration_ms / 1000:.1f}s")
    table.add_row("Original Size:", format_bytes(stats.total_original))
    table.add_row("AVIF:", f"{format_bytes(stats.total_primary)} ({stats.primary_reduction}% reduction)")
    table.add_row("Fallback:", f"{format_bytes(stats.total_fallback)} ({stats.fallback_reduction}% reduction)")

    out.print(table)
    out.print()

    if stats.failures:
        out.print("[bold red]Errors:[/bold red]")
        for path, error in stats.failures:
            out.print(f"  ❌ {escape(str(path))}: {escape(error)}", soft_wrap=True)

# =============================================================================
# Interactive Prompts
# =============================================================================

def ask_questions(input_dir: str, output_dir: str, quality: int) -> Tuple[str, str, int]:
    """Ask for input folder, output folder and quality."""
    input_dir = Prompt.ask("Input folder", default=input_dir, console=console)
    output_dir = Prompt.ask("Output folder", default=output_dir, console=console)

    while True:
        quality = IntPrompt.ask("Quality (0-100)", default=quality, console=console)
        valid, msg = validate_quality(quality)
        if valid:
            break
        console.print(f"[red]{msg}[/red]")

    return input_dir, output_dir, quality

def confirm_processing(count: int) -> bool:
    return Confirm.ask(f"Convert {count} images?", default=True, console=console)

# =============================================================================
# Main Entry Point
# =============================================================================

def setup_logging(silent: bool, verbose: bool, log_file: Optional[str]):
    log_level = logging.WARNING if silent else (logging.DEBUG if verbose else logging.INFO)
    logging.basicConfig(level=log_level, format=LOG_FORMAT)
    logger.setLevel(log_level)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)

def run_batch(
    input_root: Path,
    output_root: Path,
    config: Config,
    concurrency: int,
    silent: bool = False,
    confirm: Optional[Callable[[int], bool]] = None
) -> int:
    """
    Discover, convert and report. Returns the process exit code.
    """
    try:
        ensure_directory(input_root, create_if_missing=False)
    except FileNotFoundError:
        console.print(f"[bold red]❌ Error: Input folder not found[/bold red]\n   Path: {escape(str(input_root))}")
        return 1

    if output_root == input_root or output_root in input_root.parents:
        console.print("[bold red]❌ Error: Output folder must not contain the input folder[/bold red]")
        return 1

    if config.resize:
        logger.warning(f"Resize is not supported yet, ignoring --resize {config.resize}")

    if not silent:
        console.print(f"\n📁 Searching for images... ({escape(str(input_root))})")

    # An output folder inside the input folder holds earlier results, not inputs
    files = find_images(input_root, config.pattern, exclude=output_root)

    if not files:
        console.print("[yellow]No image files found.[/yellow]")
        return 0

    if not silent:
        console.print(f"📁 Found {len(files)} images")

    if confirm and not confirm(len(files)):
        console.print("Cancelled.")
        return 0

    if not silent:
        console.print(f"\n🧹 Resetting output folder... ({escape(str(output_root))})")
    try:
        clean_directory(output_root)
    except OSError as e:
        # Keep going and write into whatever is already there
        logger.warning(f"Failed to reset output folder: {e}")
        console.print(f"[yellow]⚠️  Failed to reset output folder: {escape(str(e))}[/yellow]")
    ensure_directory(output_root)

    jobs = build_jobs(files, input_root, output_root, config)
    scheduler = ConversionScheduler(concurrency)

    if not silent:
        console.print(f"\nConverting with {scheduler.concurrency} workers...")

    start_time = time.monotonic()
    if silent:
        results = scheduler.run(jobs)
    else:
        with create_progress(console) as progress:
            results = scheduler.run(jobs, on_result=ProgressReporter(progress, len(jobs)))
    duration_ms = int((time.monotonic() - start_time) * 1000)

    print_summary(aggregate(results), duration_ms)
    return 0

@click.command()
@click.option("--input", "-i", "input_dir", help="Input folder.")
@click.option("--output", "-o", "output_dir", help="Output folder. Its contents are replaced.")
@click.option("--quality", "-q", default=DEFAULT_QUALITY, help="Quality for AVIF and fallback images (0-100, default: 80).")
@click.option("--effort", "-e", default=DEFAULT_EFFORT, help="AVIF encoder effort (0-9, default: 4). Higher is slower and smaller.")
@click.option("--resize", "-r", default=None, help="Target size, e.g. 50% or 1920 (not applied yet).")
@click.option("--pattern", "-p", default=DEFAULT_PATTERN, show_default=True, help="File pattern.")
@click.option("--yes", "-y", is_flag=True, help="Skip the confirmation prompt.")
@click.option("--silent", "-s", is_flag=True, help="Minimize progress output.")
@click.option("--jobs", "-j", default=0, help="Number of images converted at once (default: CPU count).")
@click.option("--log-file", type=click.Path(), help="Write logs to file.")
@click.option("--verbose", "-v", is_flag=True, help="Increase output verbosity.")
@click.version_option(__version__)
def main(input_dir, output_dir, quality, effort, resize, pattern, yes, silent, jobs, log_file, verbose):
    """
    Batch convert PNG/JPEG/WebP images to AVIF.

    A recompressed copy in the original format is written next to each AVIF
    file. Runs interactively when neither --input nor --output is given.
    """
    setup_logging(silent, verbose, log_file)

    is_interactive = not input_dir and not output_dir
    input_dir = input_dir or DEFAULT_INPUT
    output_dir = output_dir or DEFAULT_OUTPUT

    if is_interactive:
        console.print("[cyan]AVIF converter - interactive mode[/cyan]")
        input_dir, output_dir, quality = ask_questions(input_dir, output_dir, quality)

    concurrency = jobs or default_concurrency()
    valid, msg = validate_concurrency(concurrency)
    if not valid:
        console.print(f"[bold red]Error: {msg}[/bold red]")
        sys.exit(2)

    try:
        config = Config(quality=quality, effort=effort, resize=resize, pattern=pattern)
    except ValueError as e:
        console.print(f"[bold red]Error: {e}[/bold red]")
        sys.exit(2)

    try:
        exit_code = run_batch(
            Path(input_dir).expanduser().resolve(),
            Path(output_dir).expanduser().resolve(),
            config,
            concurrency,
            silent=silent,
            confirm=confirm_processing if is_interactive and not yes else None,
        )
    except Exception as e:
        logger.debug("Unexpected error", exc_info=True)
        console.print(f"[bold red]Unexpected error: {escape(str(e))}[/bold red]")
        sys.exit(1)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
