"""Reference extraction and resolution.

- formats.py: file format classification and the extension taxonomy
- extractor.py / generic.py: per-format reference extractors
- resolver.py: exact path resolution
- fuzzy.py: fuzzy cascade for loose mentions
- imports.py: import and re-export resolution for the relationship builder
- linker.py: turns a file's references into edges, pending records and mentions
- ledger.py: pending references and mentions, and their sweeps
"""
