# incident_capture/prompts.py

QUESTION_TEMPLATE_PREFIX = "generate_clarification_questions_"
ENHANCEMENT_TEMPLATE_NAME = "enhance_narrative_content"
INCIDENTS_SUBSYSTEM = "incidents"
DEFAULT_TEMPLATE_VERSION = "v1.0.0"


def question_template_name(phase: str) -> str:
    return f"{QUESTION_TEMPLATE_PREFIX}{phase}"


_QUESTION_PROMPT_BODY = """
Context:
- Participant: {{participant_name}}
- Reporter: {{reporter_name}}
- Location: {{location}}
- Event Date: {{event_date_time}}

Current Phase: {{phase}}
Narrative Content:
```
{{narrative_content}}
```

Guidelines:
- Questions must be supportive and non-judgmental.
- Focus on gathering facts, not assigning blame.
- Use clear, simple language appropriate for post-incident stress.
- Each question must elicit specific, actionable information.
- Never ask about facts the narrative already states.
- Avoid leading questions.

Return ONLY a JSON array, no commentary:
[
  {"question_text": "Specific question here?"},
  {"question_text": "Another specific question?"}
]
"""

BEFORE_EVENT_QUESTIONS_PROMPT = """
You are helping a support worker document what happened BEFORE an incident.
Generate 2-4 open-ended clarification questions about the participant's mood,
routine, environment and any early warning signs leading up to the event.
""" + _QUESTION_PROMPT_BODY

DURING_EVENT_QUESTIONS_PROMPT = """
You are helping a support worker document what happened DURING an incident.
Generate 2-4 open-ended clarification questions about the sequence of actions,
the people present, what was said and any strategies or interventions used.
""" + _QUESTION_PROMPT_BODY

END_EVENT_QUESTIONS_PROMPT = """
You are helping a support worker document how an incident ENDED.
Generate 2-4 open-ended clarification questions about how the situation was
resolved, who resolved it, injuries or damage, and the participant's state at the end.
""" + _QUESTION_PROMPT_BODY

POST_EVENT_QUESTIONS_PROMPT = """
You are helping a support worker document what happened AFTER an incident.
Generate 2-4 open-ended clarification questions about the support provided
afterwards, notifications made, follow-up actions and referrals.
""" + _QUESTION_PROMPT_BODY

QUESTION_PROMPTS = {
    "before_event": BEFORE_EVENT_QUESTIONS_PROMPT,
    "during_event": DURING_EVENT_QUESTIONS_PROMPT,
    "end_event": END_EVENT_QUESTIONS_PROMPT,
    "post_event": POST_EVENT_QUESTIONS_PROMPT,
}

ENHANCE_NARRATIVE_PROMPT = """
You are enhancing an incident narrative by incorporating clarification answers.

Participant: {{participant_name}}

Original {{phase}} narrative:
```
{{original_narrative}}
```

Clarification Questions & Answers:
{{clarification_qa}}

Instructions:
- Combine the original narrative with the clarification answers.
- Maintain the original tone and perspective.
- Do not summarize or change the meaning.
- Keep all factual information from both sources.
- Use clear, professional language suitable for incident reports.

Return only the enhanced {{phase}} narrative text.
"""

# Used when the AI service is exhausted or no template is registered.
FALLBACK_QUESTIONS = {
    "before_event": [
        "What was the participant doing in the hour before the incident?",
        "Were there any unusual circumstances or changes to routine before the event?",
    ],
    "during_event": [
        "Can you describe the sequence of events during the incident?",
        "Were there any witnesses present during the event?",
    ],
    "end_event": [
        "How did the incident conclude?",
        "What immediate actions were taken to address the situation?",
    ],
    "post_event": [
        "What support was provided to the participant after the incident?",
        "Were any follow-up actions or referrals made?",
    ],
}

DEFAULT_TEMPLATES = [
    {
        "prompt_name": question_template_name(phase),
        "prompt_template": template,
        "description": f"Generate clarification questions for the {phase} phase",
        "workflow_step": "clarification_questions",
        "max_tokens": 1000,
        "temperature": 0.3,
    }
    for phase, template in QUESTION_PROMPTS.items()
] + [
    {
        "prompt_name": ENHANCEMENT_TEMPLATE_NAME,
        "prompt_template": ENHANCE_NARRATIVE_PROMPT,
        "description": "Enhance a phase narrative with its clarification answers",
        "workflow_step": "narrative_enhancement",
        "max_tokens": 2000,
        "temperature": 0.1,
    },
]
