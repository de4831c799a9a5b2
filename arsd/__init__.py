"""Local filter-list daemon answering block/hide queries over a Unix socket."""

__version__ = "0.1.0"
