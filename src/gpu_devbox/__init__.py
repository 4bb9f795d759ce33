"""GPU DevBox: rentable GPU development containers with SSH and Jupyter access."""

__version__ = "0.1.0"
