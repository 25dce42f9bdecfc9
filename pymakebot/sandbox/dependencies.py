"""Static scan of import statements into a DependencyPlan."""

import re

from ..types import DependencyPlan

IMPORT_RE = re.compile(r"^import\s+(.+)$")
FROM_IMPORT_RE = re.compile(r"^from\s+([A-Za-z_]\w*)(?:\.[\w.]*)?\s+import\b")
MODULE_NAME_RE = re.compile(r"^([A-Za-z_]\w*)")

STDLIB_MODULES = frozenset(
    {
        "abc", "aifc", "argparse", "array", "ast", "asynchat", "asyncio", "asyncore",
        "atexit", "audioop", "base64", "bdb", "binascii", "binhex", "bisect", "builtins",
        "bz2", "calendar", "cgi", "cgitb", "chunk", "cmath", "cmd", "code", "codecs",
        "codeop", "collections", "colorsys", "compileall", "concurrent", "configparser",
        "contextlib", "contextvars", "copy", "copyreg", "crypt", "csv", "ctypes", "curses",
        "dataclasses", "datetime", "dbm", "decimal", "difflib", "dis", "distutils", "doctest",
        "email", "encodings", "enum", "errno", "faulthandler", "fcntl", "filecmp", "fileinput",
        "fnmatch", "fractions", "ftplib", "functools", "gc", "getopt", "getpass", "gettext",
        "glob", "graphlib", "grp", "gzip", "hashlib", "heapq", "hmac", "html", "http", "idlelib",
        "imaplib", "imghdr", "imp", "importlib", "inspect", "io", "ipaddress", "itertools",
        "json", "keyword", "lib2to3", "linecache", "locale", "logging", "lzma", "mailbox",
        "mailcap", "marshal", "math", "mimetypes", "mmap", "modulefinder", "msilib", "msvcrt",
        "multiprocessing", "netrc", "nis", "nntplib", "numbers", "operator", "optparse", "os",
        "ossaudiodev", "parser", "pathlib", "pdb", "pickle", "pickletools", "pipes", "pkgutil",
        "platform", "plistlib", "poplib", "posix", "posixpath", "pprint", "profile", "pstats",
        "pty", "pwd", "py_compile", "pyclbr", "pydoc", "queue", "quopri", "random", "re",
        "readline", "reprlib", "resource", "rlcompleter", "runpy", "sched", "secrets", "select",
        "selectors", "shelve", "shlex", "shutil", "signal", "site", "smtpd", "smtplib", "sndhdr",
        "socket", "socketserver", "spwd", "sqlite3", "ssl", "stat", "statistics", "string",
        "stringprep", "struct", "subprocess", "sunau", "symbol", "symtable", "sys", "sysconfig",
        "syslog", "tabnanny", "tarfile", "telnetlib", "tempfile", "termios", "test", "textwrap",
        "threading", "time", "timeit", "tkinter", "token", "tokenize", "tomllib", "trace",
        "traceback", "tracemalloc", "tty", "turtle", "turtledemo", "types", "typing", "unicodedata",
        "unittest", "urllib", "uu", "uuid", "venv", "warnings", "wave", "weakref", "webbrowser",
        "winreg", "winsound", "wsgiref", "xdrlib", "xml", "xmlrpc", "zipapp", "zipfile", "zipimport",
        "zlib", "_thread",
    }
)  # fmt: skip

# Import name -> distribution name on the package index.
INSTALL_ALIASES: dict[str, str] = {
    "cv2": "opencv-python",
    "PIL": "Pillow",
    "sklearn": "scikit-learn",
    "yaml": "PyYAML",
    "bs4": "beautifulsoup4",
}


def extract_imports(code: str) -> list[str]:
    """Top-level module names from ``import x`` / ``from x import`` lines, sorted, unique."""
    found = set()
    for line in code.splitlines():
        stripped = line.split("#", 1)[0].strip()
        match = FROM_IMPORT_RE.match(stripped)
        if match:
            found.add(match.group(1))
            continue
        match = IMPORT_RE.match(stripped)
        if match:
            # import a.b as c, d
            for name in match.group(1).split(","):
                top = MODULE_NAME_RE.match(name.strip())
                if top:
                    found.add(top.group(1))
    return sorted(found)


def is_stdlib(module: str) -> bool:
    return module in STDLIB_MODULES


def scan(code: str) -> DependencyPlan:
    """Build a DependencyPlan from source text. Pure: no filesystem or network access."""
    detected = extract_imports(code)
    return DependencyPlan(
        detected_imports=frozenset(detected),
        non_standard=frozenset(m for m in detected if not is_stdlib(m)),
    )


def install_names(plan: DependencyPlan) -> tuple[str, ...]:
    """Distribution names to pass to pip for ``plan.non_standard``, sorted."""
    return tuple(sorted(INSTALL_ALIASES.get(m, m) for m in plan.non_standard))
