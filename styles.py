# styles.py
from dataclasses import dataclass
from typing import Dict, List, Optional

from models import Tier

_PORTRAIT = (
    "full head visible, head and shoulders portrait, soft studio lighting, neutral background, "
    "even illumination, high quality, youtube thumbnail style, 8k"
)


@dataclass(frozen=True)
class StyleDescriptor:
    id: str
    label: str
    emoji: str
    tier: Tier
    prompt: str

    def prompt_for(self, trigger_word: str) -> str:
        return self.prompt.format(trigger=trigger_word)


def _style(label: str, emoji: str, tier: Tier, look: str) -> StyleDescriptor:
    return StyleDescriptor(
        id=label.lower(),
        label=label,
        emoji=emoji,
        tier=tier,
        prompt=f"{{trigger}} person, {look}, {_PORTRAIT}",
    )


FREE_STYLES: List[StyleDescriptor] = [
    _style("Happy", "😊", Tier.FREE,
           "extremely happy, wide open smile showing teeth, laughing eyes, pure joy"),
    _style("Sad", "😢", Tier.FREE,
           "very sad expression, closed mouth, frowning downturned mouth, pouting lips, big teary eyes, upset"),
    _style("Angry", "😠", Tier.FREE,
           "extremely angry facial expression, eyebrows down and together, gritted teeth showing, "
           "mouth open yelling, veins visible, fierce intense rage, confrontational, aggressive look"),
]

PAID_STYLES: List[StyleDescriptor] = [
    _style("Shocked", "😱", Tier.PAID,
           "extremely shocked expression, jaw dropped wide open, eyes huge and bulging out, eyebrows raised high, "
           "hands on both cheeks, gasping in disbelief"),
    _style("Excited", "🤩", Tier.PAID,
           "extremely excited expression, huge bright smile showing teeth, eyes wide and sparkling with joy, "
           "eyebrows raised, hands raised up in celebration, energetic and enthusiastic"),
    _style("Thinking", "🤔", Tier.PAID,
           "deep thinking expression, hand touching chin or stroking beard, eyes looking up and to the side, "
           "eyebrows slightly furrowed, mouth closed in contemplation, pensive and thoughtful"),
    _style("Laughing", "😂", Tier.PAID,
           "laughing hysterically, eyes squeezed shut with laugh lines, mouth wide open showing teeth, "
           "head tilted back slightly, tears of joy, pure amusement and happiness"),
    _style("Surprised", "😲", Tier.PAID,
           "surprised expression, eyebrows raised high, eyes wide open, mouth forming an O shape, slight gasp, "
           "caught off guard but not shocked"),
    _style("Confused", "🤨", Tier.PAID,
           "confused expression, one eyebrow raised higher than the other, eyes squinted slightly, "
           "mouth twisted to one side, head tilted, hand scratching head or temple, puzzled and questioning"),
    _style("Serious", "😐", Tier.PAID,
           "serious professional expression, straight face with no smile, eyes looking directly at camera "
           "with intensity, eyebrows neutral, mouth closed in firm line, confident and authoritative"),
    _style("Smirking", "😏", Tier.PAID,
           "smirking expression, one corner of mouth raised in half smile, eyes looking sideways with confidence, "
           "eyebrows slightly raised, knowing and mischievous look, cool and self-assured"),
    _style("Disgusted", "🤢", Tier.PAID,
           "disgusted expression, nose wrinkled and scrunched up, upper lip curled, eyes squinted, "
           "mouth open showing tongue slightly, repulsed and grossed out"),
]

STYLES_BY_ID: Dict[str, StyleDescriptor] = {s.id: s for s in FREE_STYLES + PAID_STYLES}


def get_style(style_id: str) -> Optional[StyleDescriptor]:
    return STYLES_BY_ID.get((style_id or "").lower())
