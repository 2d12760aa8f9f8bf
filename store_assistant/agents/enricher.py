"""Safe, generic review hints by category, feature and use case."""

from typing import Any, Dict, List, Optional

from store_assistant.models import Chunk

CATEGORY_TEMPLATES = {
    "tv": ("Reviewers often mention: OLED TVs typically excel at movie blacks and contrast, while LCD/LED "
           "models can get brighter in sunlit rooms. Gaming buyers commonly note that 120Hz and HDMI 2.1 "
           "matter for current consoles. Larger models may need wider stand space."),
    "laptop": ("Buyers commonly note: good performance for everyday tasks, a comfortable keyboard and trackpad, "
               "and decent battery life. Display brightness can vary, and fan noise may be noticeable under "
               "heavy workloads."),
    "phone": ("Reviewers typically highlight camera quality, smooth multitasking and battery life. Storage "
              "(128GB+) is a common priority."),
    "tablet": ("Reviewers often mention a great display for media and reading with all-day battery life. "
               "Larger models can be heavy to hold, and keyboards are often recommended for productivity."),
    "audio": ("Buyers commonly note clear sound with good bass, a comfortable fit and effective noise "
              "cancellation. Battery life varies with usage."),
}

FEATURE_TEMPLATES = [
    ("gaming", "Reviewers often mention: gaming-focused products prioritize high refresh rates and low input "
               "lag, sometimes at the expense of battery life."),
    ("oled", "Reviewers typically highlight: OLED displays offer deep blacks, vibrant colors and wide viewing "
             "angles. Burn-in with static content over very long periods is possible but rare with normal use."),
    ("qled", "Buyers commonly note: QLED displays offer excellent brightness and color volume for well-lit "
             "rooms, though black levels are not as deep as OLED in dark rooms."),
]

USE_CASE_HINTS = {
    "gaming": "Gaming buyers often look for 120Hz refresh rates and HDMI 2.1 support.",
    "work from home": "Buyers working from home prioritize video call quality, ergonomics and battery life.",
    "streaming": "Streaming buyers value display quality, reliable Wi-Fi and 4K/HDR support.",
    "movies": "Movie buyers prioritize deep blacks and contrast; OLED excels in dark rooms.",
    "sports": "Sports viewers look for smooth motion handling, brightness and high refresh rates.",
}

DEFAULT_TEMPLATE = ("Reviewers typically highlight product quality and performance, with some noting practical "
                    "considerations like size, weight or setup requirements.")

NAME_CATEGORY_HINTS = [
    (("tv", "television"), "tv"),
    (("laptop", "notebook"), "laptop"),
    (("phone", "smartphone"), "phone"),
    (("tablet",), "tablet"),
    (("headphone", "earbud"), "audio"),
]


def _infer_category(category: Optional[str], record: Optional[Dict[str, Any]]) -> Optional[str]:
    if category:
        return category.lower()
    if record and record.get("category"):
        return str(record["category"]).lower()
    name = str((record or {}).get("name") or "").lower()
    for needles, label in NAME_CATEGORY_HINTS:
        if any(n in name for n in needles):
            return label
    return None


def review_hints(category: Optional[str] = None, product_record: Optional[Dict[str, Any]] = None,
                 chunks: Optional[List[Chunk]] = None) -> str:
    """A generic, compliant review note for the product being discussed."""
    inferred = _infer_category(category, product_record)
    name = str((product_record or {}).get("name") or "").lower()
    text = " ".join(c.section_body for c in (chunks or [])).lower()

    for keyword, template in FEATURE_TEMPLATES:
        if keyword in name or keyword in text:
            return template
    if inferred and inferred in CATEGORY_TEMPLATES:
        return CATEGORY_TEMPLATES[inferred]
    return DEFAULT_TEMPLATE


def use_case_hint(use_case: Optional[str]) -> Optional[str]:
    return USE_CASE_HINTS.get(use_case or "")
