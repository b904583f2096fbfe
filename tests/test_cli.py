"""Tests for the avif-converter command."""

from __future__ import annotations

import re
from pathlib import Path

import pytest
from click.testing import CliRunner
from PIL import Image

import avif_converter
from tests.helpers import write_image

runner = CliRunner()


def invoke(*args: str, **kwargs):
    return runner.invoke(avif_converter.main, list(args), **kwargs)


def test_help_lists_options() -> None:
    result = invoke("--help")

    assert result.exit_code == 0
    for option in ("--input", "--output", "--quality", "--effort", "--resize", "--pattern", "--jobs"):
        assert option in result.output


def test_missing_input_folder_is_fatal(tmp_path: Path) -> None:
    result = invoke("-i", str(tmp_path / "nope"), "-o", str(tmp_path / "out"), "-y")

    assert result.exit_code == 1
    assert "Input folder not found" in result.output
    assert not (tmp_path / "out").exists()


def test_no_images_found(input_root: Path, output_root: Path) -> None:
    (input_root / "readme.txt").write_text("hi")

    result = invoke("-i", str(input_root), "-o", str(output_root), "-y")

    assert result.exit_code == 0
    assert "No image files found" in result.output


def test_batch_with_one_bad_file(input_root: Path, output_root: Path) -> None:
    write_image(input_root / "x.png", "PNG")
    write_image(input_root / "nested" / "y.jpg", "JPEG")
    (input_root / "z.gif").write_bytes(b"garbage")

    result = invoke(
        "-i", str(input_root), "-o", str(output_root),
        "-q", "80", "-e", "4", "-j", "2", "-p", "*.{png,jpg,gif}", "-y",
    )

    assert result.exit_code == 0, result.output
    assert "Done (1 errors)" in result.output
    assert "z.gif" in result.output
    assert (output_root / "x.avif").is_file()
    assert (output_root / "x.png").is_file()
    assert (output_root / "nested" / "y.avif").is_file()
    assert (output_root / "nested" / "y.jpg").is_file()
    assert not (output_root / "z.avif").exists()


def test_output_folder_is_reset(input_root: Path, output_root: Path) -> None:
    write_image(input_root / "x.png", "PNG")
    stale = output_root / "old" / "stale.avif"
    stale.parent.mkdir(parents=True)
    stale.write_bytes(b"old")

    result = invoke("-i", str(input_root), "-o", str(output_root), "-s")

    assert result.exit_code == 0, result.output
    assert not stale.exists()
    assert (output_root / "x.avif").is_file()


def test_reset_failure_is_only_a_warning(
    input_root: Path, output_root: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    write_image(input_root / "x.png", "PNG")

    def deny(path):
        raise OSError(f"Failed to clean directory: {path}. Permission denied")

    monkeypatch.setattr(avif_converter, "clean_directory", deny)

    result = invoke("-i", str(input_root), "-o", str(output_root), "-y")

    assert result.exit_code == 0, result.output
    assert "Failed to reset output folder" in result.output
    assert (output_root / "x.avif").is_file()


def test_output_containing_input_is_refused(input_root: Path) -> None:
    write_image(input_root / "x.png", "PNG")

    result = invoke("-i", str(input_root), "-o", str(input_root.parent), "-y")

    assert result.exit_code == 1
    assert (input_root / "x.png").is_file()


@pytest.mark.parametrize(
    ("args", "message"),
    [
        (["-q", "150"], "Quality must be between 0 and 100"),
        (["-e", "12"], "Effort must be between 0 and 9"),
        (["-j", "-1"], "Concurrency must be at least 1"),
    ],
)
def test_invalid_options(input_root: Path, output_root: Path, args: list[str], message: str) -> None:
    result = invoke("-i", str(input_root), "-o", str(output_root), *args)

    assert result.exit_code == 2
    assert message in result.output


def test_interactive_mode(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    write_image(tmp_path / "photos" / "x.png", "PNG")

    result = invoke(input="photos\nconverted\n70\ny\n")

    assert result.exit_code == 0, result.output
    assert "interactive mode" in result.output
    assert (tmp_path / "converted" / "x.avif").is_file()


def test_interactive_mode_can_be_cancelled(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    write_image(tmp_path / "photos" / "x.png", "PNG")

    result = invoke(input="photos\nconverted\n70\nn\n")

    assert result.exit_code == 0, result.output
    assert "Cancelled" in result.output
    assert not (tmp_path / "converted").exists()


def test_run_batch_passes_config(
    input_root: Path, output_root: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    captured = {}

    def fake_run_batch(input_root, output_root, config, concurrency, silent=False, confirm=None):
        captured.update(config=config, concurrency=concurrency, silent=silent, confirm=confirm)
        return 0

    monkeypatch.setattr(avif_converter, "run_batch", fake_run_batch)

    result = invoke("-i", str(input_root), "-o", str(output_root), "-q", "55", "-e", "7", "-r", "50%", "-j", "3", "-s")

    assert result.exit_code == 0
    assert captured["config"] == avif_converter.Config(quality=55, effort=7, resize="50%")
    assert captured["concurrency"] == 3
    assert captured["silent"] is True
    assert captured["confirm"] is None


def test_output_inside_input_is_not_rescanned(input_root: Path) -> None:
    write_image(input_root / "x.png", "PNG")
    output_root = input_root / "out"

    first = invoke("-i", str(input_root), "-o", str(output_root), "-y")
    second = invoke("-i", str(input_root), "-o", str(output_root), "-y")

    assert first.exit_code == 0, first.output
    assert second.exit_code == 0, second.output
    assert "✓ Done!" in second.output
    assert "errors" not in second.output
    assert (output_root / "x.avif").is_file()
    assert not (output_root / "out").exists()


def test_summary_shows_growth_as_negative_reduction(input_root: Path, output_root: Path) -> None:
    Image.new("RGB", (1, 1), (200, 30, 30)).save(input_root / "dot.png", format="PNG")

    result = invoke("-i", str(input_root), "-o", str(output_root), "-y")

    assert result.exit_code == 0, result.output
    assert (output_root / "dot.avif").stat().st_size > (input_root / "dot.png").stat().st_size
    assert re.search(r"AVIF:\s+.*\(-\d+% reduction\)", result.output)
