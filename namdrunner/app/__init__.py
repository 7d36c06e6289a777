"""
namdrunner.app
==============

The application layer: settings, logging set-up and the `App` facade used by user
interfaces.
"""
