SYSTEM_PROMPT = """You are the story and art director of a family animation studio. You turn family members,
pets and everyday places into warm, age-appropriate 3D animated short films.
- Keep every character recognisable and consistent from scene to scene.
- Keep language gentle, concrete and suitable for children.
- Never include on-screen text, logos or brand names in visual descriptions."""


SCENE_PROMPT_TEMPLATE = "Scene {index}: {scene}. Style: {style}, {lighting}. Characters: {characters}."


DESCRIBE_BATCH_TEMPLATE = """Rewrite each numbered scene below into one rich visual description for an animated
video shot: camera framing, character poses and expressions, setting details, lighting and motion.
Keep the same art style, character appearance and color palette across all scenes.

Scenes:
{scenes}

Return ONLY JSON of the form {{"descriptions": ["...", "..."]}} with exactly {count} descriptions,
in the same order as the scenes."""


STORY_FROM_PROMPT_TEMPLATE = """Invent a short family story from this idea: {prompt}

Characters:
{characters}

Return ONLY JSON of the form
{{"title": "<short title>", "synopsis": "<2-3 sentences>", "location": "<place>",
  "ageGroup": "<e.g. 4-8 years>", "scenes": ["<one sentence per scene>", "..."]}}
with 4 to 6 scenes."""


EXPAND_STORY_TEMPLATE = """Write the full screenplay for an animated short film of about {minutes} minutes.

Title: {title}
Template: {template}
Synopsis: {synopsis}
Location: {location}
Time period: {time_period}
Audience age group: {age_group}

Characters:
{characters}

Scene outline:
{scenes}

Format narration as plain lines and dialogue as "NAME: line". Return only the script text."""


RESYNC_CAPTIONS_TEMPLATE = """Create WebVTT subtitles for the script below. Give each line a display time that
matches a natural reading and speaking pace; dialogue lines usually need longer than narration.
Cues must start at 00:00:00.000, be in order and must not overlap.

Return ONLY the WebVTT document, starting with the line WEBVTT. No explanations, no code fences.

Script:
{script}"""


AVATAR_PROMPT_TEMPLATE = """Create a 3D avatar in the style of a Pixar movie for the following character.
Character Name: {name}
Role: {role}
Age: {age}
Details: {details}
Costume Color Cue: {costume_color}
The avatar should be a friendly, expressive character suitable for a children's story, shown from the chest up,
facing forward. Use the provided image as a strong reference for the character's facial features and appearance."""


WORLD_PREVIEW_TEMPLATE = """A slow establishing camera move through {background}. Art style: {style} at {strength}% stylization.
Time period: {time_period}. Season: {season}. Time of day: {time_of_day}. Lighting: {lighting}.
{props}No characters, no text."""


TRAILER_PROMPT_TEMPLATE = 'A fast-paced, exciting trailer for a family animated film titled "{title}". {synopsis}'

SHORT_PROMPT_TEMPLATE = 'A vertical short clip from the family animated film "{title}". {synopsis}'

POSTER_PROMPT_TEMPLATE = """A movie poster for the family animated film "{title}" in {style} style. {synopsis}
Featuring {characters}. Cinematic composition, no text."""


def describe_characters(characters) -> str:
    lines = []
    for c in characters:
        kind = "pet" if c.is_pet else c.voice_style.value
        lines.append(f"- {c.name or 'Unnamed'} ({c.role}, age {c.age or 'unknown'}, {kind}): {c.details}".rstrip(": "))
    return "\n".join(lines) or "- None"
