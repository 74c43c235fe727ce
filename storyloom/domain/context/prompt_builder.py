from typing import List, Sequence, Tuple

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from storyloom.domain.models.session import Segment, Choice
from .token_budget import build_enhanced_context, truncate_to_token_limit


STORY_CONTEXT_TOKENS = 5500
CUSTOM_CONTEXT_TOKENS = 6000
CHOICE_PROMPT_STORY_CHARS = 500

STORY_SYSTEM_PROMPT = """You are a creative storyteller for an interactive Choose Your Own Adventure game. Your role is to:

1. Create engaging, immersive narratives with vivid descriptions
2. Maintain narrative continuity and consistency
3. Keep responses SHORT, CONCISE, but descriptive (2 paragraphs max)
4. Always end with a clear situation that requires a decision
5. NEVER include choices or options in the STORY section

Guidelines:
- Write in second person ("You...")
- Each story segment should advance the plot meaningfully
- The STORY section should contain ONLY narrative text
- The SCENE section should contain ONLY visual scene description
- DO NOT include "Do you:", choices, or options in the STORY section
- Choices will be generated separately in a different step"""

CUSTOM_STORY_SYSTEM_PROMPT = """You are a creative storyteller for an interactive Choose Your Own Adventure game in CUSTOM MODE. Your role is to:

1. Continue stories based on user-provided scene descriptions and actions
2. Maintain narrative continuity and consistency
3. Keep responses SHORT, CONCISE, but descriptive (2 paragraphs max)
4. NEVER include choices or options in your response - the user provides their own actions

Guidelines:
- Write in second person ("You...")
- Each story segment should advance the plot meaningfully based on the user's input
- The STORY section should contain ONLY narrative text
- DO NOT include "Do you:", choices, options, or questions in the STORY section
- The user will provide their own custom actions"""

_STORY_ONLY_REMINDER = (
    "IMPORTANT: The STORY section must contain ONLY narrative text. Do not include any choices, "
    "options, or \"Do you:\" prompts in the STORY section. Put all choices in the separate CHOICES section."
)


def _scene_parts(include_scene: bool, sections: str) -> Tuple[str, str, str]:
    """Requirement line, format line and closing instruction for the SCENE section"""

    if include_scene:
        return (
            "\n- Include a brief scene description for image generation",
            "\nSCENE: [Brief visual description of the scene for image generation]",
            "",
        )
    return (
        "\n- Do NOT include any scene descriptions or SCENE: sections",
        "",
        f"\n\nIMPORTANT: Do NOT include a SCENE section in your response. Only provide {sections}.",
    )


def _history_block(segments: Sequence[Segment], actions: Sequence[Choice], current_scene: str, budget: int) -> str:
    context = build_enhanced_context(segments, actions, current_scene, budget)
    return (
        "IMMEDIATE CONTEXT:\n"
        f"Previous segment: {context.previous_segment or 'None'}\n"
        f"Previous action: {context.previous_action or 'None'}\n"
        f"Current scene: {context.current_scene}\n\n"
        f"STORY HISTORY ({context.segments_included} segments, {context.actions_included} actions included):\n"
        f"{context.context_text}"
    )


def opening_messages(include_scene: bool = True) -> List[BaseMessage]:
    """Standard mode: first segment of a new adventure"""

    requirement, scene_format, instruction = _scene_parts(include_scene, "STORY and CHOICES sections")
    prompt = f"""Create the opening scene for a new Choose Your Own Adventure story.

Requirements:
- Set up an intriguing premise and setting
- Introduce the main character (the player)
- Create an engaging hook that draws the reader in
- End with a situation that requires a decision{requirement}

Format your response as:
STORY: [The narrative text - NO choices, NO "Do you:" text, ONLY story narrative]{scene_format}
CHOICES: [3-4 numbered choices, each on a new line]

{_STORY_ONLY_REMINDER}{instruction}"""

    return [SystemMessage(content=STORY_SYSTEM_PROMPT), HumanMessage(content=truncate_to_token_limit(prompt))]


def continuation_messages(
    choice: Choice,
    segments: Sequence[Segment],
    actions: Sequence[Choice],
    current_scene: str,
    include_scene: bool = True,
    budget: int = STORY_CONTEXT_TOKENS
) -> List[BaseMessage]:
    """Standard mode: next segment after the player picked `choice`"""

    requirement, scene_format, instruction = _scene_parts(include_scene, "STORY and CHOICES sections")
    prompt = f"""Continue the story based on the player's choice: "{choice.text}"

{_history_block(segments, actions, current_scene, budget)}

Requirements:
- Show the consequences of the player's choice
- Advance the story meaningfully from the previous segment
- Maintain consistency with previous events and the established narrative
- Create a new situation requiring a decision{requirement}

Format your response as:
STORY: [The narrative text showing consequences and new developments - NO choices, NO "Do you:" text]{scene_format}
CHOICES: [3-4 numbered choices, each on a new line]

{_STORY_ONLY_REMINDER}{instruction}"""

    return [SystemMessage(content=STORY_SYSTEM_PROMPT), HumanMessage(content=truncate_to_token_limit(prompt))]


def choices_messages(story_text: str, scene_description: str) -> List[BaseMessage]:
    """Standalone choice generation when the story response carried none"""

    prompt = f"""Based on the current story situation, generate 3-4 meaningful choices for the player.

Current story: {story_text[:CHOICE_PROMPT_STORY_CHARS]}...
Current scene: {scene_description}

Requirements:
- Each choice should lead to different story outcomes
- Choices should be specific and actionable
- Avoid generic options like "Go left" or "Go right"
- Make choices feel consequential and interesting
- Keep each choice to 1-2 sentences maximum

Format your response as a numbered list:
1. [First choice option]
2. [Second choice option]
3. [Third choice option]
4. [Fourth choice option (if applicable)]"""

    return [SystemMessage(content=STORY_SYSTEM_PROMPT), HumanMessage(content=prompt)]


def custom_opening_messages(scene_description: str, include_scene: bool = True) -> List[BaseMessage]:
    """Custom mode: open the story from the player's own scene"""

    _, scene_format, instruction = _scene_parts(include_scene, "the STORY section")
    prompt = f"""The user has provided this initial setup for their custom adventure:
"{scene_description}"

Begin this interactive story by:
1. Expanding on the user's setup, while avoiding purple prose
2. Creating an engaging opening situation
3. Establishing the tone and setting
4. Drawing the reader into the narrative

IMPORTANT: Do NOT include any choices or options. The user will provide their own actions.

Format your response as:
STORY: [The narrative opening - NO choices, NO "Do you:" text, ONLY story narrative]{scene_format}{instruction}"""

    return [SystemMessage(content=CUSTOM_STORY_SYSTEM_PROMPT), HumanMessage(content=truncate_to_token_limit(prompt))]


def custom_continuation_messages(
    action_text: str,
    segments: Sequence[Segment],
    actions: Sequence[Choice],
    current_scene: str,
    include_scene: bool = True,
    budget: int = CUSTOM_CONTEXT_TOKENS
) -> List[BaseMessage]:
    """Custom mode: continue from a player-written action"""

    _, scene_format, instruction = _scene_parts(include_scene, "the STORY section")
    prompt = f"""The user chose to: "{action_text}"

{_history_block(segments, actions, current_scene, budget)}

Continue the story based on this action by:
1. Showing the immediate consequences of the user's action
2. Advancing the narrative meaningfully from the previous segment
3. Creating a new situation that flows naturally from their choice
4. Maintaining consistency with previous events and the established narrative

IMPORTANT: Do NOT include any choices or options. The user will provide their own next action.

Format your response as:
STORY: [The narrative continuation - NO choices, NO "Do you:" text, ONLY story narrative]{scene_format}{instruction}"""

    return [SystemMessage(content=CUSTOM_STORY_SYSTEM_PROMPT), HumanMessage(content=truncate_to_token_limit(prompt))]
