"""Test helpers for mco-operator tools."""

from pathlib import Path

from mco_operator.tool.mco_operator import main


def run_command(args: list[str], tmp_path: Path) -> str:
    """Run the command line tool and return what it wrote."""
    output_file = tmp_path / "output.yaml"
    main(args + ["--output-file", str(output_file)])
    return output_file.read_text()
