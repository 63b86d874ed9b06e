# Sphinx configuration file

import os
import sys
sys.path.insert(0, os.path.abspath('../src'))

from github_agent_workflow import __version__  # noqa: E402

project = 'GitHub Agent Workflow'
copyright = '2024, Trickl'
author = 'Trickl'
release = __version__
version = '.'.join(__version__.split('.')[:2])

extensions = [
    'sphinx.ext.autodoc',
    'sphinx.ext.napoleon',
    'sphinx.ext.viewcode',
    'sphinx.ext.intersphinx',
    'sphinx_autodoc_typehints',
]

templates_path = ['_templates']
exclude_patterns = ['_build', 'Thumbs.db', '.DS_Store']

html_theme = 'sphinx_rtd_theme'
html_static_path = []

# Autodoc settings
autodoc_default_options = {
    'members': True,
    'member-order': 'bysource',
    'exclude-members': '__weakref__, model_config, model_fields',
}
autodoc_typehints = 'description'

# GitHub and YAML are only needed at runtime
autodoc_mock_imports = ['github', 'yaml']

# Napoleon settings
napoleon_google_docstring = True
napoleon_numpy_docstring = False

# Intersphinx mapping
intersphinx_mapping = {
    'python': ('https://docs.python.org/3', None),
    'pydantic': ('https://docs.pydantic.dev/latest', None),
    'requests': ('https://requests.readthedocs.io/en/latest', None),
}
