"""Mirror a remote AList media tree into local .strm stub files."""

__version__ = "0.1.0"
