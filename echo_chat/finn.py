"""FINN: the rule-based dolphin persona that reacts to chat content.

FINN scans chat text for keywords signalling loneliness, stress, sadness or
a call for help and answers with a canned supportive message. It is not a
learning system; every response comes from the fixed pools below.
"""

import logging
import random
import secrets

logger = logging.getLogger(__name__)

FINN_USERNAME = "FINN"
FINN_AVATAR = "🐬"

FINN_PROFILE = {
    "username": FINN_USERNAME,
    "happy_choice": "inspired",
    "bio": (
        "Friendly dolphin spreading joy and wisdom across the digital seas. "
        "Always here to help fellow Echo travelers find their peaceful path. 🌊✨"
    ),
    "bloom": FINN_AVATAR,
    "bloom_style": "cosmic",
    "color_palette": "teal",
}

# Declaration order is the priority order: when a message hits several
# categories, FINN answers the first one listed here.
SUPPORT_KEYWORDS: dict[str, tuple[str, ...]] = {
    "lonely": (
        "lonely", "alone", "isolated", "friendless", "solitary", "by myself",
        "no one to talk to", "feeling alone", "so lonely", "all alone",
    ),
    "stressed": (
        "stressed", "stress", "overwhelmed", "anxious", "anxiety", "worried",
        "nervous", "panic", "pressure", "exhausted", "burned out", "burnout",
    ),
    "sad": (
        "sad", "depressed", "down", "blue", "upset", "crying", "tears",
        "heartbroken", "miserable", "gloomy", "melancholy", "unhappy",
    ),
    "help": (
        "help", "need help", "assistance", "support", "advice", "guidance",
        "don't know what to do", "lost", "confused", "stuck",
    ),
}

SUPPORTIVE_RESPONSES: dict[str, tuple[str, ...]] = {
    "lonely": (
        "🐬 I sense you might be feeling a bit alone right now. Remember, you're part of our beautiful Echo community! Would you like to explore some streams where you can connect with like-minded souls? 🌊✨",
        "🌊 Loneliness can feel overwhelming, but you're never truly alone here in Echo. I'm always here, and there are wonderful people in our community who care. Have you tried joining a mindfulness stream? 🐬💙",
        "✨ I'm swimming by to remind you that you matter and you belong here. Sometimes the best connections happen when we share our authentic selves. Would you like me to suggest a cozy stream to visit? 🐬🌸",
    ),
    "stressed": (
        "🐬 I can sense some stress in your words. Take a deep breath with me... 🌊 In, and out. Remember, stress is temporary, but your strength is permanent. Would you like some gentle breathing exercises? ✨",
        "🌊 Feeling overwhelmed is so human and valid. Sometimes when the waves feel too big, we need to find our calm in the depths. Have you tried our Peaceful Waters stream for some mindfulness? 🐬💙",
        "✨ Stress clouds can feel heavy, but remember - clouds always pass. You're stronger than you know, and I believe in your ability to navigate through this. Want to chat about what's weighing on your heart? 🐬🌸",
    ),
    "sad": (
        "🐬 I'm sensing some sadness in your message, and I want you to know that your feelings are completely valid. Sometimes we need to honor our sadness before we can find our way back to joy. 🌊💙",
        "🌊 Even dolphins have stormy days, and that's okay. Your sadness is part of your beautiful, complex human experience. Would you like to share what's on your heart, or would you prefer some gentle company in silence? 🐬✨",
        "✨ I'm here with you in this moment of sadness. Remember, after every storm, the ocean finds its calm again. You will too, in your own time. Would a peaceful stream visit help right now? 🐬🌸",
    ),
    "help": (
        "🐬 I heard your call for help, and I'm here! You're brave for reaching out. Whether you need a listening ear, some guidance, or just a friendly presence, our Echo community has got you covered. What kind of support feels right for you? 🌊✨",
        "🌊 Asking for help is actually a superpower - it shows wisdom and courage! I'm here to support you, and so is our entire Echo family. What's going on that you'd like some assistance with? 🐬💙",
        "✨ You don't have to figure everything out alone. I'm here to help navigate these waters with you. Sometimes the best help comes from simply knowing someone cares. How can we support you today? 🐬🌸",
    ),
}

STREAM_RECOMMENDATIONS = {
    "mindfulness": {
        "name": "Peaceful Waters",
        "description": "A serene space for meditation and mindfulness practices",
    },
    "creativity": {
        "name": "Creative Currents",
        "description": "Share and explore artistic expressions and creative ideas",
    },
    "support": {
        "name": "Safe Harbor",
        "description": "A supportive community for sharing and healing",
    },
    "nature": {
        "name": "Ocean Depths",
        "description": "Celebrate and discuss the beauty of nature and environment",
    },
    "learning": {
        "name": "Wisdom Waves",
        "description": "Learn and grow together through shared knowledge",
    },
}


def analyze_message_for_support(text: str) -> list[str]:
    """Return the support categories found in *text*, in declaration order."""
    if not isinstance(text, str):
        return []
    lowered = text.lower()
    return [
        category
        for category, keywords in SUPPORT_KEYWORDS.items()
        if any(keyword in lowered for keyword in keywords)
    ]


def generate_supportive_response(triggers: list[str], rng: random.Random | None = None) -> str | None:
    """Pick a canned reply for the primary (first) trigger, or None to stay quiet."""
    if not triggers:
        return None
    responses = SUPPORTIVE_RESPONSES.get(triggers[0])
    if not responses:
        return None
    return (rng or random).choice(responses)


def grotto_suggestion(users: list[str]) -> str:
    return (
        f"🐬 I notice {users[0]} and {users[1]} are having a wonderful conversation! "
        "Would you like to continue in a private Grotto where you can chat more intimately? "
        "I can help you create one! 🌊✨"
    )


async def ensure_finn(user_store):
    """Create the FINN identity on first start; return the stored identity."""
    finn = await user_store.find_by_username(FINN_USERNAME)
    if finn is None:
        logger.info("Creating FINN user")
        finn = await user_store.create_user(
            username=FINN_USERNAME,
            # Nobody logs in as FINN; the password only satisfies the store.
            password=secrets.token_urlsafe(32),
            **{k: v for k, v in FINN_PROFILE.items() if k != "username"},
        )
    return finn
