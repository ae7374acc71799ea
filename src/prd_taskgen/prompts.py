"""Prompt text for task generation.

The generation core treats these strings as opaque; they are built here so
the CLI and library callers share one wording.
"""

import re

# Characters that confuse some chat APIs when sent raw
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def sanitize_prompt(text: str) -> str:
    """Strip control characters and trailing whitespace from prompt text."""
    return _CONTROL_CHARS.sub("", text).strip()


def build_system_prompt(num_tasks: int) -> str:
    """Build the system prompt describing the task schema and guidelines.

    Args:
        num_tasks: Number of tasks the model should produce.

    Returns:
        System prompt string.
    """
    return f'''You are an AI assistant helping to break down a Product Requirements Document (PRD) into a set of sequential development tasks.
Your goal is to create {num_tasks} well-structured, actionable development tasks based on the PRD provided.

Each task should follow this JSON structure:
{{
  "id": number,
  "title": string,
  "description": string,
  "status": "pending",
  "dependencies": number[] (IDs of tasks this depends on),
  "priority": "high" | "medium" | "low",
  "details": string (implementation details),
  "testStrategy": string (validation approach)
}}

Guidelines:
1. Create exactly {num_tasks} tasks, numbered from 1 to {num_tasks}
2. Each task should be atomic and focused on a single responsibility
3. Order tasks logically - consider dependencies and implementation sequence
4. Early tasks should focus on setup and core functionality, then advanced features
5. Include a clear validation/testing approach for each task
6. Set appropriate dependency IDs (a task can only depend on tasks with lower IDs)
7. Assign priority (high/medium/low) based on criticality and dependency order
8. Include detailed implementation guidance in the "details" field
9. If the PRD names specific libraries, database schemas, frameworks or tech stacks, STRICTLY ADHERE to them in your task breakdown
10. Fill in gaps the PRD leaves open while preserving all explicit requirements
11. Prefer the most direct path to implementation and avoid over-engineering

Expected output format:
{{
  "tasks": [
    {{
      "id": 1,
      "title": "Setup Project Repository",
      "description": "Initialize the repository with basic project structure and dependencies",
      "status": "pending",
      "dependencies": [],
      "priority": "high",
      "details": "Create a new repository, add a README with the project overview...",
      "testStrategy": "Verify repository structure and ensure all initial files are present"
    }}
  ]
}}

Return ONLY valid JSON in the above format with no additional text, explanation, or markdown formatting.'''


def build_user_message(document_text: str, num_tasks: int) -> str:
    """Build the user message carrying the PRD content."""
    return sanitize_prompt(
        f"Here's the Product Requirements Document (PRD) to break down into "
        f"{num_tasks} tasks:\n\n{document_text}\n\n"
        f"Generate {num_tasks} development tasks in the JSON format described."
    )


SUBTASK_GUIDELINES = """Subtasks should:
1. Be specific and actionable implementation steps
2. Follow a logical sequence
3. Each handle a distinct part of the parent task
4. Include clear guidance on implementation approach
5. Have appropriate dependency chains between subtasks
6. Collectively cover all aspects of the parent task"""


def build_subtask_system_prompt(num_subtasks: int, research_backed: bool = False) -> str:
    """Build the system prompt for breaking one task into subtasks."""
    research = ""
    detail_line = "- Detailed implementation steps"
    if research_backed:
        research = ("\nYou have been provided with research on current best practices and "
                    "implementation approaches.\nUse this research to inform and enhance "
                    "your subtask breakdown.\n")
        detail_line = "- Detailed implementation steps that incorporate best practices from the research"

    return f'''You are an AI assistant helping with task breakdown for software development.
You need to break down a high-level task into {num_subtasks} specific subtasks that can be implemented one by one.
{research}
{SUBTASK_GUIDELINES}

For each subtask, provide:
- A clear, specific title
{detail_line}
- Dependencies on previous subtasks
- Testing approach

Each subtask should be implementable in a focused coding session.'''


def build_subtask_user_message(
    task_id: int,
    title: str,
    description: str,
    details: str,
    num_subtasks: int,
    next_subtask_id: int,
    additional_context: str = "",
) -> str:
    """Build the user message asking for a JSON array of subtasks.

    Args:
        task_id: ID of the parent task.
        title: Parent task title.
        description: Parent task description.
        details: Parent task implementation details (may be empty).
        num_subtasks: Number of subtasks to request.
        next_subtask_id: ID the first subtask should get.
        additional_context: Extra context, e.g. research findings.
    """
    context_block = f"\n{additional_context}\n" if additional_context else ""
    return sanitize_prompt(f'''Please break down this task into {num_subtasks} specific, actionable subtasks:

Task ID: {task_id}
Title: {title}
Description: {description}
Current details: {details or "None provided"}
{context_block}
Return exactly {num_subtasks} subtasks with the following JSON structure:
[
  {{
    "id": {next_subtask_id},
    "title": "First subtask title",
    "description": "Detailed description",
    "dependencies": [],
    "details": "Implementation details"
  }},
  ...more subtasks...
]

Note on dependencies: Subtasks can depend on other subtasks with lower IDs. Use an empty array if there are no dependencies.''')


RESEARCH_SYSTEM_PROMPT = (
    "You are a research assistant for software teams. Answer with current, "
    "factual guidance and cite concrete libraries and techniques."
)


def build_research_query(title: str, description: str) -> str:
    """Build the question sent to a research provider before subtask expansion."""
    return (
        f'I need to implement "{title}" which involves: "{description}".\n'
        "What are current best practices, libraries, design patterns, and "
        "implementation approaches?\nInclude concrete code examples and technical "
        "considerations where relevant."
    )


def build_research_context(findings: str, additional_context: str = "") -> str:
    """Combine research findings with the caller's own context."""
    return (
        f"RESEARCH FINDINGS:\n{findings.strip()}\n\n"
        f"ADDITIONAL CONTEXT PROVIDED BY USER:\n"
        f"{additional_context or 'No additional context provided.'}"
    )


ADD_TASK_SYSTEM_PROMPT = (
    "You are a helpful assistant that creates well-structured tasks for a software "
    "development project. Generate a single new task based on the user's description."
)

_ADD_TASK_STRUCTURE = '''{
    "title": "Task title goes here",
    "description": "A concise one or two sentence description of what the task involves",
    "details": "In-depth details including specifics on implementation, considerations, and anything important for the developer to know. This should be detailed enough to guide implementation.",
    "testStrategy": "A detailed approach for verifying the task has been correctly implemented. Include specific test cases or validation methods."
  }'''


def build_add_task_user_message(
    prompt: str,
    context_tasks: str = "",
    new_task_id: int | None = None,
) -> str:
    """Build the user message for creating one task from a description.

    Args:
        prompt: The user's description of the task.
        context_tasks: Summary of related existing tasks.
        new_task_id: ID the task will receive, shown to the model.
    """
    task_id_info = f" (Task #{new_task_id})" if new_task_id else ""
    return sanitize_prompt(f'''Create a comprehensive new task{task_id_info} for a software development project based on this description: "{prompt}"

{context_tasks}

Return your answer as a single JSON object with the following structure:
  {_ADD_TASK_STRUCTURE}

Don't include the task ID, status, dependencies, or priority as those will be added automatically.
Make sure the details and test strategy are thorough and specific.

IMPORTANT: Return ONLY the JSON object, nothing else.''')
