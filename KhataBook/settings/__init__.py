"""
Settings package for KhataBook.

- :mod:`KhataBook.settings.lib` – Configuration paths, the application settings schema, and the settings API.
"""
