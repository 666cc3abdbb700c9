__version__ = "1.0.0"
__title__ = "SmartWait"
__description__ = "Virtual waiting-line manager with SMS position updates"
__license__ = "MIT"

__all__ = [
    "__version__",
    "__title__",
    "__description__",
    "__license__",
]
