"""Prompt builders -- pure functions, one per pipeline prompt."""

from __future__ import annotations

from dataclasses import dataclass

from reelforge.schemas import (
    ALLOWED_DURATIONS,
    Character,
    Concept,
    GenerationOptions,
    Shot,
)

NO_TEXT_CLAUSE = (
    "NO overlay graphics, captions, speech bubbles, subtitles, labels, or "
    "watermarks. Clean photographic image only. Output only the image."
)

# ─── Generation modes ──────────────────────────────────────


@dataclass(frozen=True)
class GenerationMode:
    id: str
    label: str
    idea_direction: str
    scene_direction: str
    storyboard_tone: str


GENERATION_MODES: dict[str, GenerationMode] = {
    m.id: m
    for m in (
        GenerationMode(
            id="action",
            label="Action",
            idea_direction=(
                "Write it like the most intense scene in a big-budget movie. "
                "Specific people, a specific place, a moment already in "
                "progress. No hero poses, no 'racing against time'."
            ),
            scene_direction=(
                "Dialogue under stress is short, clipped and overlapping. "
                "Each shot names one physical action and the sound around it."
            ),
            storyboard_tone=(
                "High contrast, dynamic shadows, handheld energy, desaturated "
                "with pops of color"
            ),
        ),
        GenerationMode(
            id="comedy",
            label="Comedy",
            idea_direction=(
                "Find the game: one normal situation with ONE thing wrong, "
                "played totally straight, escalating every beat. Specificity "
                "is the joke."
            ),
            scene_direction=(
                "Every shot plays the game and escalates it. Characters do "
                "hyper-specific things and say the mundane thing during chaos."
            ),
            storyboard_tone=(
                "Bright natural lighting, warm tones, slightly messy lived-in "
                "environment, casual framing"
            ),
        ),
        GenerationMode(
            id="deadpan",
            label="Deadpan",
            idea_direction=(
                "Absurd premise, zero acknowledgement. Everyone behaves as if "
                "this is a completely ordinary Tuesday."
            ),
            scene_direction=(
                "Static, symmetrical compositions. Flat delivery. Nobody "
                "reacts to the absurdity."
            ),
            storyboard_tone=(
                "Flat institutional lighting, symmetrical static composition, "
                "fluorescent overhead, no dramatic shadows, mundane "
                "environment, DMV/waiting-room aesthetic, slightly overexposed"
            ),
        ),
        GenerationMode(
            id="stylize",
            label="Stylize",
            idea_direction=(
                "The user is art-directing. Commit to the visual style they "
                "name and build the concept around it."
            ),
            scene_direction="Repeat the requested style verbatim in every shot.",
            storyboard_tone=(
                "Follow the specific style direction from the concept exactly "
                "— this mode is artist-directed"
            ),
        ),
        GenerationMode(
            id="unhinged",
            label="Unhinged",
            idea_direction=(
                "Shoot the idea in the completely wrong genre, with total "
                "commitment to that genre's conventions."
            ),
            scene_direction=(
                "Every shot obeys the wrong genre's grammar: its camera, its "
                "narration, its music cues."
            ),
            storyboard_tone=(
                "Match the wrong-genre aesthetic from the concept — if it says "
                "nature documentary, shoot it like a nature documentary. If "
                "prestige drama, make it look like prestige drama"
            ),
        ),
    )
}

DEFAULT_MODE_ID = "action"


def get_mode(mode_id: str | None) -> GenerationMode:
    """Look up a generation mode; unknown ids fall back to the default."""
    return GENERATION_MODES.get(mode_id or "", GENERATION_MODES[DEFAULT_MODE_ID])


# ─── Dialogue pacing ───────────────────────────────────────


# Ceilings quoted to the planning model; below duration x WORDS_PER_SECOND.
DIALOGUE_WORD_LIMITS = {2: 4, 4: 8, 6: 12, 8: 18}


def dialogue_word_limit(duration: int) -> int:
    for allowed in ALLOWED_DURATIONS:
        if duration <= allowed:
            return DIALOGUE_WORD_LIMITS[allowed]
    return DIALOGUE_WORD_LIMITS[ALLOWED_DURATIONS[-1]]


# ─── Phase 1: Concept ──────────────────────────────────────


def idea_prompt(
    user_prompt: str,
    mode_id: str | None = None,
    reference_tags: list[str] | None = None,
) -> str:
    mode = get_mode(mode_id)
    refs = ""
    if reference_tags:
        listed = "\n".join(
            f"{i}. {tag.strip() or 'unlabelled'}" for i, tag in enumerate(reference_tags, 1)
        )
        refs = f"Attached reference images, in order:\n{listed}\n\n"
    return (
        "You are a creative director developing a video concept. Take the "
        "user's idea and turn it into a SPECIFIC, CINEMATIC concept: a "
        "specific person in a specific place doing a specific thing.\n\n"
        f"Mode — {mode.label}: {mode.idea_direction}\n\n"
        "Rules:\n"
        "- SPECIFIC PEOPLE: age, build, clothing, distinguishing features.\n"
        "- SPECIFIC PLACES: not 'a city', but a half-empty laundromat at 2 AM.\n"
        "- SPECIFIC MOMENTS: we land mid-story.\n"
        "- VISUAL IDENTITY: name a camera, a lens, a grade, a director or "
        "DP reference. 'Cinematic' is not a visual identity.\n\n"
        f"{refs}"
        f"User input: {user_prompt}"
    )


# ─── Phase 2: Shot plan ────────────────────────────────────


_NARRATIVE_STRUCTURES = {
    2: "Two shots: setup and payoff. The cut between them IS the story.",
    3: (
        "Three shots: ESTABLISH the world, ESCALATE as something changes, "
        "RESOLVE with the payoff from a different angle."
    ),
    4: (
        "Four shots: establish, develop, complicate, land. End on the "
        "strongest image."
    ),
    5: (
        "Five shots: open, introduce, develop, climax, resolve. Vary the "
        "energy between shots."
    ),
}


def _narrative_structure(num_shots: int | None) -> str:
    if num_shots is None:
        return (
            "Choose the number of shots the story needs: 2 for a before/after, "
            "3 for a three-act beat, 4-5 for an arc, 6+ for a short film. "
            "No filler shots."
        )
    if num_shots in _NARRATIVE_STRUCTURES:
        return _NARRATIVE_STRUCTURES[num_shots]
    if num_shots >= 6:
        return (
            f"{num_shots} shots: think in sequences — an opening that sets "
            f"the tone, development, a climax around shot "
            f"{max(1, int(num_shots * 0.7))}, then resolution."
        )
    return _NARRATIVE_STRUCTURES[3] if num_shots > 1 else "One shot, one moment."


def _duration_guidance(options: GenerationOptions) -> str:
    if options.duration == "auto":
        total = (
            f"Target ~{options.total_length} seconds in total."
            if options.total_length
            else "You decide the total length; do not pad."
        )
        return (
            "You choose each shot's duration from 2, 4, 6 or 8 seconds. "
            "Reactions and cutaways 2-4s, establishing shots and longer "
            f"dialogue 6-8s. {total}\n"
            "DIALOGUE WORD LIMITS per shot: 2s = 4 words, 4s = 8 words, "
            "6s = 12 words, 8s = 18 words. People speak ~2.5 words per second."
        )
    limit = dialogue_word_limit(options.duration)
    return (
        f"Every shot is EXACTLY {options.duration} seconds long. "
        f"MAXIMUM {limit} words of dialogue per shot (people speak ~2.5 "
        f"words per second); longer dialogue gets cut off mid-sentence. "
        f"Everything described must be physically achievable in "
        f"{options.duration} real seconds."
    )


def shot_plan_prompt(concept: Concept, options: GenerationOptions) -> str:
    mode = get_mode(options.mode_id)
    count = (
        f"Generate exactly {options.num_shots} shots."
        if options.num_shots
        else "Generate the optimal number of shots for this story."
    )
    music = (
        "\n\nNO MUSIC: only diegetic sound in audio cues — ambience, "
        "footsteps, dialogue. No score or soundtrack."
        if options.no_music
        else ""
    )
    return (
        "You are a scene breakdown specialist for AI video generation. Break "
        "the concept into shots, each one a specific camera setup capturing "
        "a specific moment.\n\n"
        "Each shot's prompt is sent to the video model INDEPENDENTLY, with "
        "zero memory of other shots. Re-describe every character (age, "
        "build, hair, clothing), the environment and the look in every "
        "prompt. Keep prompts to 60-80 words. The prompt is VISUAL ONLY; put "
        "spoken lines in the dialogue list with the speaker's name.\n\n"
        "Consistency: one camera, lens and grade for all shots. Same key "
        "light side within a location. Props stay with their characters. "
        "Never two consecutive shots with the same framing.\n\n"
        "Characters: give each a short first name, list the names present "
        "in every shot, and return a top-level character list with full "
        "physical descriptions and the shot indices they appear in.\n\n"
        f"Mode — {mode.label}: {mode.scene_direction}\n\n"
        f"{_narrative_structure(options.num_shots)}\n\n"
        f"{_duration_guidance(options)}{music}\n\n"
        "Never use the words subtitle, caption or text overlay.\n\n"
        f"Concept:\nTitle: {concept.title}\n"
        f"Description: {concept.description}\n"
        f"Visual style: {concept.style}\n"
        f"Mood: {concept.mood}\n"
        f"Key elements: {', '.join(concept.key_elements)}\n\n"
        f"{count}"
    )


# ─── Mood board ────────────────────────────────────────────


_MOOD_VARIANTS = (
    "Wide establishing frame of the key location.",
    "Medium frame on the main character mid-action.",
    "Close detail frame of one key element.",
    "Over-the-shoulder frame looking into the scene.",
    "Low-angle frame with a practical light source in shot.",
    "High-angle frame showing the space and its clutter.",
)


def mood_board_prompt(concept: Concept, variant: int = 0) -> str:
    framing = _MOOD_VARIANTS[variant % len(_MOOD_VARIANTS)]
    return (
        "Generate a single frame grab from a real film for this video "
        "concept:\n\n"
        f"Title: {concept.title}\n"
        f"Description: {concept.description}\n"
        f"Visual style: {concept.style}\n"
        f"Mood: {concept.mood}\n"
        f"Key elements: {', '.join(concept.key_elements)}\n\n"
        f"Framing: {framing}\n\n"
        "It must look like a FRAME GRAB pulled from a real movie, not a stock "
        "photo or a posed portrait. People are mid-action and never look at "
        "the camera. The environment is lived in, lit by practical sources "
        "with a visible origin, with depth from foreground to background. "
        "Imperfection: a stray hair, dust in a light beam.\n\n"
        f"{NO_TEXT_CLAUSE}"
    )


# Colorist notes, keyed by the label shown to the user.
REFINE_MODIFIERS: dict[str, str] = {
    "More Cinematic": (
        "Relight the scene. Kill the fill and let one hard key do the work. "
        "Shadows go to true black. Rack the depth of field down so the "
        "background falls off. Halation around practical lights. Grade like "
        "Kodak Vision3 500T: rich mids, dense blacks, glowing skin."
    ),
    "Home Video": (
        "Shot on a 2003 consumer camcorder. Soft everywhere, highlights "
        "blown 1.5 stops, flat contrast with lifted blacks, wrong warm-green "
        "white balance, tilted off-center framing, compression artifacts in "
        "the dark areas, autofocus hunting."
    ),
    "Darker": (
        "Pull exposure down a full stop. Only 30-40% of the frame is "
        "readable. Narrow the key so it only hits the subject; everything "
        "else falls to black. Practicals become the only light sources."
    ),
    "Brighter": (
        "Open it up with two stops of ambient fill, like a large window on "
        "an overcast day. Shadows lift to soft gray. Gentle contrast, low "
        "lighting ratio, white surfaces read as true white."
    ),
    "Warmer": (
        "Push the image toward 3200K tungsten. Amber-brown shadows, pale "
        "gold highlights, ruddy skin. Practicals read as the source of the "
        "warmth. Chocolate blacks."
    ),
    "Cooler": (
        "Shift toward 6500K and beyond. Steel-blue shadows, clinical white "
        "highlights, slightly ashen skin. Teal-blue grade, navy blacks. The "
        "color of 4am under fluorescent light."
    ),
    "More Gritty": (
        "Pushed Tri-X: heavy photochemical grain in the mids and shadows, a "
        "hard S-curve, 30-40% desaturation. Every surface texture visible. "
        "Subtle lens aberration at the edges."
    ),
    "More Polished": (
        "Clean it up for the client. No grain. Soft diffused key, bounce "
        "fill, subtle hair light. Controlled shadows, a restrained rich "
        "palette, even skin. Nothing feels accidental."
    ),
}


def refine_mood_board_prompt(modifier: str, concept: Concept) -> str:
    """Raises ``KeyError`` for an unknown modifier."""
    note = REFINE_MODIFIERS[modifier]
    return (
        "You are a cinematographer and colorist. The attached image is a "
        "frame from a production. Rebuild this frame with the adjustment "
        "below — same scene, same subjects, same composition, same moment. "
        "You are changing how it was shot and graded, not what happens.\n\n"
        f'Director\'s note: "{modifier}"\n\n{note}\n\n'
        f"The production is: {concept.title} — {concept.description}\n\n"
        "Regenerate this exact frame with the adjustment applied. Output "
        "only the image."
    )


# ─── Phase 3: Character portraits ──────────────────────────


def portrait_prompt(style: str, character: Character, has_style_ref: bool) -> str:
    style_note = (
        "Match the color grade and film texture of the attached style "
        "reference frame. "
        if has_style_ref
        else ""
    )
    return (
        f"Cinematic character portrait. {style} visual style and color "
        f"grade. {style_note}Shallow depth of field, motivated lighting.\n\n"
        f"Subject ({character.name}): {character.description}\n\n"
        "Framing: tight medium close-up from the chest up against a pure "
        "solid black background. No environment, no set, no backdrop. The "
        "face is the focal point, key light with subtle fill, natural skin "
        "tones.\n\n"
        "This is the definitive character reference for a film production; "
        "this exact person must be recognizable in every later frame.\n\n"
        f"{NO_TEXT_CLAUSE}"
    )


def group_reference_prompt(style: str, characters: list[Character]) -> str:
    descriptions = "; ".join(f"{c.name}: {c.description}" for c in characters)
    return (
        "The attached images are character reference portraits, in this "
        f"order: {', '.join(c.name for c in characters)}. Generate a NEW "
        "image placing these EXACT same people together in one cinematic "
        f"frame.\n\n{style} visual style and color grade. Wide aperture, "
        f"motivated lighting.\n\nCharacters: {descriptions}\n\n"
        "Framing: medium shot, everyone clearly visible with a natural "
        "spatial relationship. Each character must look IDENTICAL to their "
        "reference portrait — same face, hair, skin tone, build, clothing.\n\n"
        f"{NO_TEXT_CLAUSE}"
    )


def group_key(names: list[str]) -> str:
    """Stable key for a set of co-occurring characters."""
    return "+".join(sorted(set(names)))


# ─── Phase 4: Locations & environments ─────────────────────


def location_cluster_prompt(shots: list[Shot]) -> str:
    listing = "\n".join(f"Shot {s.index}: {s.prompt}" for s in shots)
    return (
        "Group these shots by PHYSICAL LOCATION. Shots that take place in "
        "the same physical space (same room, same street corner, same "
        "vehicle interior) share a group id, even when the camera angle "
        "differs. Return exactly one integer per shot, in shot order, "
        f"starting at 0.\n\nThere are {len(shots)} shots:\n{listing}"
    )


def environment_prompt(shot: Shot, tone: str, has_style_ref: bool) -> str:
    style_note = (
        "Match the color grade and texture of the attached style reference. "
        if has_style_ref
        else ""
    )
    return (
        f"Cinematic empty set / environment. {tone}. {style_note}Generate "
        "ONLY the physical environment described in this shot: location, "
        "lighting, set dressing, props, atmosphere. ABSOLUTELY NO PEOPLE. "
        "The set is empty, waiting for actors.\n\n"
        f"Shot description: {shot.prompt}\n\n"
        "It must look like a film set photographed before the actors "
        "arrived: practical light sources, lived-in details, depth in the "
        "frame. Match the camera angle, lens and framing implied by the "
        "shot description.\n\n"
        f"{NO_TEXT_CLAUSE}"
    )


def environment_angle_prompt(shot: Shot, tone: str, reference_count: int) -> str:
    refs = (
        "The first attached image is the master shot of this location"
        + (
            "; the others are earlier angles of the same location"
            if reference_count > 1
            else ""
        )
        + ". "
        if reference_count
        else ""
    )
    return (
        f"{refs}Generate a DIFFERENT CAMERA ANGLE OF THE IDENTICAL PHYSICAL "
        "SPACE — not a similar location, the same one. Same walls, same "
        "furniture and props in the same places, same light sources from "
        f"the same side, same time of day. {tone}. ABSOLUTELY NO PEOPLE.\n\n"
        f"New camera setup from this shot: {shot.prompt}\n\n"
        f"{NO_TEXT_CLAUSE}"
    )


# ─── Phase 5: Storyboard frames ────────────────────────────


def frame_prompt(
    shot: Shot,
    characters: list[Character],
    tone: str,
    reference_roles: list[str],
    feedback: str | None = None,
) -> str:
    """Storyboard frame prompt.

    ``reference_roles`` describes each attached image in the order it is
    sent, so the model knows which image plays which part.
    """
    ref_note = ""
    if reference_roles:
        lines = "\n".join(
            f"Image {i}: {role}" for i, role in enumerate(reference_roles, 1)
        )
        ref_note = f"Attached reference images, in order:\n{lines}\n\n"
    char_context = ""
    if characters:
        char_lines = "\n".join(f"- {c.name}: {c.description}" for c in characters)
        char_context = (
            "Characters in frame (must match their reference portraits "
            f"exactly):\n{char_lines}\n\n"
        )
    correction = (
        f"\n\nCONTINUITY CORRECTION (fix this, keep everything else): {feedback}"
        if feedback
        else ""
    )
    return (
        f"{ref_note}Cinematic production still. {tone}\n\n"
        f"Shot description: {shot.prompt}\n\n"
        f"{char_context}"
        "This must look like a FRAME GRAB from a real film. Characters are "
        "mid-action, never looking at the camera, touching their "
        "environment. The environment is lived in. Match the camera, lens "
        "and framing from the shot description exactly.\n\n"
        f"{NO_TEXT_CLAUSE}{correction}"
    )


def continuity_prompt(shot_description: str) -> str:
    return (
        "Image 1 is the PREVIOUS storyboard frame. Image 2 is the CANDIDATE "
        "frame for the next shot of the same film. Score, from 1 to 10, how "
        "well the candidate continues the previous frame on four axes:\n"
        "- color_grade: same palette, contrast and film texture\n"
        "- lighting: same key direction, quality and practical sources\n"
        "- character_likeness: recurring people look identical\n"
        "- environment_match: recurring locations are the same space\n\n"
        "A change of camera angle is expected and is NOT a continuity "
        "error. If any axis is weak, write specific corrective instructions "
        "for the candidate in feedback; otherwise leave feedback empty.\n\n"
        f"Candidate shot description: {shot_description}"
    )


# ─── Phase 6: Video ────────────────────────────────────────


def video_prompt(shot: Shot, style_context: str = "", no_music: bool = False) -> str:
    parts = [shot.prompt]
    if style_context and style_context not in shot.prompt:
        parts.append(style_context)
    for line in shot.dialogue:
        parts.append(f'{line.speaker} says: "{line.text}"')
    if no_music:
        parts.append("No music, diegetic sound only.")
    return " ".join(p.strip() for p in parts if p.strip())
