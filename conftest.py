from __future__ import annotations

import importlib.util

# PDF reader tests depend on the optional pypdf extra.
# Skip collecting them when pypdf is not installed.
if importlib.util.find_spec("pypdf") is None:
    collect_ignore_glob = [
        "services/tracker/tests/test_pdf_reader.py",
    ]
