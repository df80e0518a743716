"""Local development loop for Publish-style static sites.

This package builds a site, serves its ``Output`` folder through a supervised
preview server, and rebuilds whenever the ``Sources``, ``Resources`` or
``Content`` folders change.
"""

__version__ = "0.1.0"
