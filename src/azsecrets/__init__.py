"""Azure service principal secrets engine.

Issues short-lived Azure credentials and rotates the root credential used
to create them.
"""

__version__ = "0.1.0"
