"""geoforge terminal rendering.

Modules
-------
renderer
    ``ReportRenderer`` turns ``RunReport``, plans and cache statistics into
    Rich renderables for terminal display.
"""
