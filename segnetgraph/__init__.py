"""Layer graphs for semantic segmentation networks, with a gradient descent and QuickProp trainer."""

__version__ = "0.1.0"