import os
import sys
sys.path.insert(0, os.path.abspath('../..'))  # points to repo root

# Configuration file for the Sphinx documentation builder.
#
# For the full list of built-in configuration values, see the documentation:
# https://www.sphinx-doc.org/en/master/usage/configuration.html

# -- Project information -----------------------------------------------------

project = 'Study Room Reservations Service'
copyright = '2026, Study Room Reservations contributors'
author = 'Study Room Reservations contributors'
release = '1.0.0'

# -- General configuration ---------------------------------------------------

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.napoleon",   # numpy-style docstrings
    "sphinx.ext.viewcode",
    "sphinx.ext.autosummary",
]
autosummary_generate = True

# importing the app creates tables; point autodoc at a throwaway database
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

templates_path = ['_templates']
exclude_patterns = []

# -- Options for HTML output -------------------------------------------------

html_theme = 'alabaster'
html_static_path = ['_static']
