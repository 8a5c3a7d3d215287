"""Visual SLAM building blocks: frames, two-view initialization, conversions and Hessians."""

__version__ = "0.1.0"

__all__ = [
    "converter",
    "frame",
    "hessian",
    "initializer",
    "two_view",
]