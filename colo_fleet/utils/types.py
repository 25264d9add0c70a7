import pathlib as pl

FileType = str | pl.Path
# Exit code and output lines of a command executed on a node
CommandOutput = tuple[int, list[str]]
