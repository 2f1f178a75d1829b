"""
Fixed exclusion policy (version-control metadata and fync's own temporaries)
"""
import re

TMP_SUFFIX = ".fync-tmp"
STAGING_DIR = ".fync-staging"

# Not user-configurable: both peers must exclude exactly the same paths,
# otherwise one side would see deletions the other never made.
EXCLUDED = (
    ".git",
    ".hg",
    ".svn",
    ".bzr",
    "_darcs",
    "CVS",
    STAGING_DIR,
    "*" + TMP_SUFFIX,
)


def _compile_pattern(raw: str):
    """Compile a glob-style pattern into a regex matching at any depth"""
    p = raw.strip()
    if not p or p.startswith("#"):
        return None
    escaped = re.escape(p)
    escaped = escaped.replace(r"\*\*", "§DS§")
    escaped = escaped.replace(r"\*", "[^/]*")
    escaped = escaped.replace(r"\?", "[^/]")
    escaped = escaped.replace("§DS§", ".*")
    if not escaped.startswith("/"):
        escaped = r"(^|.*\/)" + escaped
    try:
        return re.compile(escaped + r"(/.*)?$")
    except re.error:
        return None


def load_ignore_patterns() -> list:
    """Compile the fixed exclusion list"""
    patterns = []
    for raw in EXCLUDED:
        c = _compile_pattern(raw)
        if c:
            patterns.append(c)
    return patterns


PATTERNS = load_ignore_patterns()


def is_ignored(rel_path: str, patterns: list = None) -> bool:
    """Check if a path matches any exclusion pattern"""
    norm = rel_path.replace("\\", "/")
    return any(p.search(norm) for p in (PATTERNS if patterns is None else patterns))


def is_temporary(name: str) -> bool:
    """True for names fync uses while staging incoming content"""
    return name.endswith(TMP_SUFFIX)
