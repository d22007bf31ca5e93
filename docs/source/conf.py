# Configuration file for the Sphinx documentation builder.
#
# For the full list of built-in configuration values, see the documentation:
# https://www.sphinx-doc.org/en/master/usage/configuration.html

# add project root to sys.path for autodoc
import os
import sys

sys.path.insert(0, os.path.abspath('../..'))

# -- Project information -----------------------------------------------------

project = 'KhataBook'
author = 'KhataBook contributors'
copyright = f'2024, {author}'
release = '2.0.0'

# -- General configuration ---------------------------------------------------

extensions = [
    'sphinx.ext.autodoc',
    'sphinx.ext.napoleon',
    'sphinx.ext.viewcode',
    'sphinx.ext.autosectionlabel',
]

napoleon_google_docstring = True
napoleon_use_param = False
napoleon_use_ivar = False

autosectionlabel_prefix_document = True

templates_path = []
exclude_patterns = []

autodoc_default_options = {
    'member-order': 'groupwise',
    'show-inheritance': True,
}
autodoc_preserve_defaults = True

# Google client libraries and Qt are not needed to render the API pages
autodoc_mock_imports = ['PySide6', 'google', 'googleapiclient', 'google_auth_oauthlib', 'httplib2']

# -- Options for HTML output -------------------------------------------------

html_theme = 'furo'
highlight_language = 'python'
