"""Allow `python -m imageprep`, which is what the resume trigger invokes."""

from imageprep.cli import cli_entry


if __name__ == "__main__":
    cli_entry()
