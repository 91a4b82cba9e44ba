"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  LeadHub CRM - Lead Quality Scorer                                           ║
║                                                                              ║
║  Texte entrant -> {heat, score 0-100, intent, urgency}                       ║
║                                                                              ║
║  Pur et déterministe: appelé au premier contact ET à chaque ré-analyse       ║
║  d'un lead existant, la même entrée doit toujours donner la même sortie.     ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import re
from typing import Dict, Any, List

BASE_SCORE = 30
EMPTY_MESSAGE_SCORE = 20

# Purchase signals
HIGH_INTENT_KEYWORDS = [
    "buy", "purchase", "order", "price", "cost", "quote", "quotation",
    "invoice", "payment", "pay", "book", "reserve", "confirm",
    "interested", "want", "need", "require", "urgent", "asap",
    "immediately", "today", "now", "ready",
]

# Comparison / research
WARM_INTENT_KEYWORDS = [
    "details", "information", "info", "tell me", "looking for",
    "available", "availability", "stock", "delivery", "shipping",
    "specifications", "features", "options", "variants",
]

URGENT_KEYWORDS = [
    "urgent", "asap", "immediately", "today", "now", "emergency",
    "right now", "as soon as possible", "quick", "fast",
]

# Premium / bulk
PREMIUM_KEYWORDS = [
    "bulk", "wholesale", "business", "company", "corporate",
    "large order", "multiple", "quantity", "dealer", "distributor",
]

HEAT_THRESHOLDS = [
    (80, "ON_FIRE"),
    (60, "HOT"),
    (40, "WARM"),
]


def _count_matches(text: str, keywords: List[str]) -> int:
    # Substring match on purpose: "urgently" counts for "urgent"
    return sum(1 for keyword in keywords if keyword in text)


def heat_for_score(score: int) -> str:
    for threshold, heat in HEAT_THRESHOLDS:
        if score >= threshold:
            return heat
    return "COLD"


def analyze_lead_quality(message_body: str) -> Dict[str, Any]:
    """
    Keyword-bucket classifier.

    Scoring:
      base 30
      high intent: >=3 -> +40 (purchase), 2 -> +30 (purchase), 1 -> +15
      warm intent: >=3 -> +20, 2 -> +15, 1 -> +8
      urgency: any -> +15 (high, >=2 matches -> critical)
      premium/bulk: any -> +20
      >=2 question marks -> +5
      >20 words -> +10, <5 words -> -10
      clamp [0, 100]

    Heat: >=80 ON_FIRE, >=60 HOT, >=40 WARM, else COLD.
    """
    if not message_body or not str(message_body).strip():
        return {
            "heat": "COLD",
            "score": EMPTY_MESSAGE_SCORE,
            "intent": "unknown",
            "urgency": "low",
        }

    text = str(message_body).lower()
    score = BASE_SCORE
    urgency = "low"
    intent = "inquiry"

    high_intent_count = _count_matches(text, HIGH_INTENT_KEYWORDS)
    warm_intent_count = _count_matches(text, WARM_INTENT_KEYWORDS)
    urgent_count = _count_matches(text, URGENT_KEYWORDS)
    premium_count = _count_matches(text, PREMIUM_KEYWORDS)

    # ═══════ Intent ═══════
    if high_intent_count >= 3:
        score += 40
        intent = "purchase"
    elif high_intent_count == 2:
        score += 30
        intent = "purchase"
    elif high_intent_count == 1:
        score += 15

    if warm_intent_count >= 3:
        score += 20
    elif warm_intent_count == 2:
        score += 15
    elif warm_intent_count == 1:
        score += 8

    # ═══════ Urgency / value ═══════
    if urgent_count > 0:
        score += 15
        urgency = "critical" if urgent_count >= 2 else "high"

    if premium_count > 0:
        score += 20

    # ═══════ Engagement ═══════
    question_count = text.count("?")
    if question_count >= 2:
        score += 5

    word_count = len(re.split(r"\s+", text.strip()))
    if word_count > 20:
        score += 10
    elif word_count < 5:
        score -= 10

    score = min(100, max(0, score))

    return {
        "heat": heat_for_score(score),
        "score": score,
        "intent": intent,
        "urgency": urgency,
        "analysis": {
            "high_intent_matches": high_intent_count,
            "warm_intent_matches": warm_intent_count,
            "urgent_matches": urgent_count,
            "premium_matches": premium_count,
            "question_count": question_count,
            "word_count": word_count,
        },
    }


def should_qualify(analysis: Dict[str, Any]) -> bool:
    """Auto-qualification: purchase intent or HOT+ heat"""
    return analysis.get("intent") == "purchase" or analysis.get("heat") in ("HOT", "ON_FIRE")
