import logging
from itertools import zip_longest
from typing import Dict, List, Sequence

from localizer.schemas.dubbing import VoiceOut

logger = logging.getLogger(__name__)

_RACHEL = VoiceOut(voice_id='21m00Tcm4TlvDq8ikWAM', name='Rachel', gender='female', accent='american', age='young')
_DOMI = VoiceOut(voice_id='AZnzlk1XvdvUeBnXmlld', name='Domi', gender='female', accent='american', age='young')
_BELLA = VoiceOut(voice_id='EXAVITQu4vr4xnSDxMaL', name='Bella', gender='female', accent='american', age='young')
_ANTONI = VoiceOut(voice_id='ErXwobaYiN019PkySvjV', name='Antoni', gender='male', accent='american', age='young')
_ARNOLD = VoiceOut(voice_id='VR6AewLTigWG4xSOukaG', name='Arnold', gender='male', accent='american', age='middle')
_ADAM = VoiceOut(voice_id='pNInz6obpgDQGcFmaJgB', name='Adam', gender='male', accent='american', age='middle')
_SAM = VoiceOut(voice_id='yoZ06aMxZJJ28mfd3POQ', name='Sam', gender='male', accent='american', age='young')
_CHARLOTTE = VoiceOut(voice_id='XB0fDUnXU5powFXDhCwa', name='Charlotte', gender='female', accent='indian', age='young')
_CHARLIE = VoiceOut(voice_id='IKne3meq5aSn9XLyUdCD', name='Charlie', gender='male', accent='indian', age='middle')
_DANIEL = VoiceOut(voice_id='onwK4e9ZLuTAKqWW03F9', name='Daniel', gender='male', accent='indian', age='young')

_INDIAN = [_CHARLOTTE, _CHARLIE, _DANIEL]

# curated premade voices per target language; anything else uses English
LANGUAGE_VOICES: Dict[str, List[VoiceOut]] = {
    'en': [_RACHEL, _DOMI, _BELLA, _ANTONI, _ARNOLD, _ADAM, _SAM],
    'hi': _INDIAN,
    'bn': _INDIAN,
    'ta': _INDIAN,
    'te': _INDIAN,
    'ml': _INDIAN,
}


def voices_for_language(language: str) -> List[VoiceOut]:
    return list(LANGUAGE_VOICES.get((language or '').lower(), LANGUAGE_VOICES['en']))


def recommend_voices(language: str, speaker_count: int) -> List[VoiceOut]:
    """One voice per speaker, alternating female/male; repeats once the catalogue runs out."""
    catalogue = voices_for_language(language)
    female = [v for v in catalogue if v.gender == 'female']
    male = [v for v in catalogue if v.gender == 'male']
    ordered = [v for pair in zip_longest(female, male) for v in pair if v is not None]
    if speaker_count > len(ordered):
        logger.info("Only %d voices for %s; reusing voices for %d speakers", len(ordered), language, speaker_count)
    return [ordered[i % len(ordered)] for i in range(speaker_count)]


def assign_voices(language: str, speaker_count: int, requested: Sequence[str]) -> List[str]:
    """Voice id per speaker index: caller ids first (extras ignored), defaults for the rest."""
    chosen = [v for v in requested if v][:speaker_count]
    if len(chosen) < speaker_count:
        defaults = recommend_voices(language, speaker_count)
        chosen += [v.voice_id for v in defaults[len(chosen):]]
    return chosen
