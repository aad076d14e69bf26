"""
Prompt Construction
===================

Builds the instructions handed to agent CLIs for build and review sessions.

Fallback chain for each template:
1. Project-specific: {repo}/.buildforge/prompts/{name}.md
2. Built-in default defined in this module

Templates use ``string.Template`` placeholders (``$title``, ``$stories``...).
"""

import logging
from pathlib import Path
from string import Template
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

PROMPTS_DIRNAME = Path(".buildforge") / "prompts"

DEFAULT_TEMPLATES = {
    "epic_build": """You are implementing an epic in this repository.

# Epic: $title

$description

## User stories
$stories

Implement every story that is not marked done. Keep changes focused on this
epic, run the project's tests where they exist, and commit your work on the
current branch with descriptive messages.
""",
    "story_build": """You are implementing one user story in this repository.

# Story: $title
Part of epic: $epic_title

$description

## Acceptance criteria
$acceptance_criteria

Implement this story only. Run the project's tests where they exist and
commit your work on the current branch.
""",
    "team_build": """You are leading a team build covering several epics in this repository.
Use sub-agents (the Task tool) to work on independent epics in parallel.

$epics

Implement every story that is not marked done and commit your work with
descriptive messages.
""",
    "epic_review": """You are reviewing the work done for an epic in this repository.
Do not modify any files.

# Epic under review: $title

$description

## User stories
$stories

$checklist

## Instructions
Perform a $review_label of the whole epic. Read the relevant source files,
evaluate them against every checklist item and write a markdown report.
State "No issues found." for clean categories. End with the number of findings
per severity and an overall verdict (Approved, Approved with Minor Issues or
Changes Requested).
""",
    "story_review": """You are reviewing the work done for one user story in this repository.
Do not modify any files.

# Story under review: $title
Part of epic: $epic_title

$description

## Acceptance criteria
$acceptance_criteria

$checklist

## Instructions
Perform a $review_label of this story. Read the relevant source files,
evaluate them against every checklist item and write a markdown report.
End with the number of findings per severity and an overall verdict.
""",
}

REVIEW_TYPES = ("security", "code_review", "compliance")

REVIEW_LABELS = {
    "security": "Security Review",
    "code_review": "Code Review",
    "compliance": "Compliance & Accessibility Review",
}

REVIEW_CHECKLISTS = {
    "security": """## Security checklist
1. Injection: no user input reaches SQL, shell commands or HTML unescaped.
2. Authentication and authorization checks where required; no privilege escalation.
3. No hardcoded secrets; credentials come from the environment or secure config.
4. Sensitive data is not logged and error messages do not leak internals.
5. No known vulnerable dependencies were introduced.

For each finding give severity (Critical, High, Medium, Low, Info), file and
line, a description and a recommendation.""",
    "code_review": """## Code review checklist
1. Readability and naming.
2. Duplication that should be shared.
3. Error handling on every failure path.
4. Performance problems such as N+1 queries or needless work.
5. Type coverage and interfaces for data structures.
6. Test coverage, including edge cases.
7. Consistent API design and status codes.

For each finding give severity (Critical, Major, Minor, Suggestion), file and
line, a description and a recommendation.""",
    "compliance": """## Compliance and accessibility checklist
1. WCAG AA: semantic markup, keyboard access, labels, contrast, alt text.
2. Internationalization: no hardcoded user-facing strings, locale-aware formatting.
3. Licenses of new dependencies are compatible with the project.

For each finding give severity (Critical, Major, Minor, Suggestion), file and
line, a description and a recommendation.""",
}


def get_project_prompts_dir(repo_path: Path) -> Path:
    """Get the prompt override directory for a repository."""
    return repo_path / PROMPTS_DIRNAME


def load_prompt_template(name: str, repo_path: Optional[Path] = None) -> str:
    """
    Load a prompt template with fallback chain.

    Args:
        name: Template name, e.g. "epic_build"
        repo_path: Optional repository holding project-specific overrides

    Raises:
        KeyError: If no template of that name exists
    """
    if repo_path:
        override = get_project_prompts_dir(Path(repo_path)) / f"{name}.md"
        if override.exists():
            try:
                return override.read_text(encoding="utf-8")
            except OSError as e:
                logger.warning("Could not read %s: %s", override, e)

    return DEFAULT_TEMPLATES[name]


def _format_stories(stories: Iterable) -> str:
    lines = []
    for story in stories:
        marker = "x" if story.status == "done" else " "
        lines.append(f"- [{marker}] {story.title}")
        if story.description:
            lines.append(f"  {story.description.strip()}")
        if story.acceptance_criteria:
            lines.append(f"  Acceptance criteria: {story.acceptance_criteria.strip()}")
    return "\n".join(lines) if lines else "(no stories)"


def build_epic_prompt(epic, stories: Iterable, repo_path: Optional[Path] = None) -> str:
    template = Template(load_prompt_template("epic_build", repo_path))
    return template.safe_substitute(
        title=epic.title,
        description=epic.description or "",
        stories=_format_stories(stories),
    )


def build_story_prompt(story, epic, repo_path: Optional[Path] = None) -> str:
    template = Template(load_prompt_template("story_build", repo_path))
    return template.safe_substitute(
        title=story.title,
        epic_title=epic.title if epic is not None else "",
        description=story.description or "",
        acceptance_criteria=story.acceptance_criteria or "(none given)",
    )


def build_team_prompt(epics: Iterable, repo_path: Optional[Path] = None) -> str:
    sections = []
    for epic in epics:
        sections.append(
            f"# Epic: {epic.title}\n\n{epic.description or ''}\n\n"
            f"## User stories\n{_format_stories(epic.user_stories)}"
        )
    template = Template(load_prompt_template("team_build", repo_path))
    return template.safe_substitute(epics="\n\n".join(sections))


def build_review_prompt(review_type: str, epic, stories: Iterable = (), story=None,
                        repo_path: Optional[Path] = None) -> str:
    """Review prompt for an epic, or for ``story`` when given."""
    checklist = REVIEW_CHECKLISTS[review_type]
    label = REVIEW_LABELS[review_type]
    if story is not None:
        template = Template(load_prompt_template("story_review", repo_path))
        return template.safe_substitute(
            title=story.title,
            epic_title=epic.title if epic is not None else "",
            description=story.description or "",
            acceptance_criteria=story.acceptance_criteria or "(none given)",
            checklist=checklist,
            review_label=label,
        )
    template = Template(load_prompt_template("epic_review", repo_path))
    return template.safe_substitute(
        title=epic.title,
        description=epic.description or "",
        stories=_format_stories(stories),
        checklist=checklist,
        review_label=label,
    )
