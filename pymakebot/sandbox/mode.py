"""Decide whether a script needs the terminal (interactive) or can run captured."""

from ..types import ExecutionMode

# Substrings that indicate the program reads the keyboard, opens a window or
# drives the terminal. Dynamically constructed imports are not detected.
INTERACTIVE_MARKERS: tuple[str, ...] = (
    "pygame",
    "input(",
    "turtle",
    "tkinter",
    "curses",
    "getpass",
    "cv2.imshow",
    "plt.show",
    "matplotlib",
)


def interactive_markers(code: str) -> list[str]:
    """Return the markers found in ``code``, in declaration order."""
    return [marker for marker in INTERACTIVE_MARKERS if marker in code]


def classify(code: str) -> ExecutionMode:
    if interactive_markers(code):
        return ExecutionMode.INTERACTIVE
    return ExecutionMode.CAPTURED
