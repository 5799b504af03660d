# Sphinx configuration for cinerag
# https://www.sphinx-doc.org/en/master/usage/configuration.html

from __future__ import annotations

import importlib.metadata

# -- Project information -----------------------------------------------------

project = "cinerag"
author = "cinerag contributors"
copyright = f"2026, {author}"  # noqa: A001

try:
    release = importlib.metadata.version("cinerag")
except importlib.metadata.PackageNotFoundError:
    release = "0.1.0"
version = ".".join(release.split(".")[:2])

# -- General configuration ---------------------------------------------------

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.autosummary",
    "sphinx.ext.napoleon",
    "sphinx.ext.intersphinx",
    "sphinx.ext.viewcode",
    "myst_parser",
]

exclude_patterns = ["_build", "Thumbs.db", ".DS_Store"]

# Accept both .md and .rst
source_suffix = {
    ".rst": "restructuredtext",
    ".md": "markdown",
}

root_doc = "index"

# -- MyST parser options -----------------------------------------------------

myst_enable_extensions = [
    "colon_fence",
    "deflist",
]
myst_heading_anchors = 3

# -- Autodoc options ---------------------------------------------------------

autodoc_default_options = {
    "members": True,
    "show-inheritance": True,
    "member-order": "bysource",
}
autodoc_typehints = "description"
autodoc_typehints_format = "short"
# Heavy or service-backed dependencies are not needed to render the API docs
autodoc_mock_imports = [
    "mcp",
    "chromadb",
    "sentence_transformers",
    "psycopg2",
    "pgvector",
    "httpx",
]

napoleon_google_docstring = True
napoleon_numpy_docstring = False
napoleon_include_init_with_doc = True

autosummary_generate = True

# -- Intersphinx -------------------------------------------------------------

intersphinx_mapping = {
    "python": ("https://docs.python.org/3", None),
    "pydantic": ("https://docs.pydantic.dev/latest/", None),
    "numpy": ("https://numpy.org/doc/stable/", None),
}

# -- HTML output -------------------------------------------------------------

html_theme = "furo"
html_title = "cinerag"

html_theme_options = {
    "light_css_variables": {
        "color-brand-primary": "#b7383f",
        "color-brand-content": "#83343a",
    },
    "dark_css_variables": {
        "color-brand-primary": "#cf7278",
        "color-brand-content": "#ff8894",
    },
}
