# Prompt for turning a free-text request into task form fields.
# Categories come from models.TASK_CATEGORIES; "All" is a view and never offered.
# dueDate must come back as YYYY-MM-DD; anything else is dropped during validation.
PARSE_TASK_PROMPT = """Parse the following user request to create a task. Your goal is to extract key details and respond ONLY with a valid JSON object.

The JSON object should have the following fields:
- "title": (string) The main subject or title of the task. This should be concise.
- "description": (string, optional) Any additional details, notes, or context for the task. If not much detail is provided, this can be a short elaboration of the title or omitted.
- "category": (string, optional) Suggest a category for this task from the following allowed categories: {categories}. If no suitable category is apparent, omit this field.
- "dueDate": (string, optional) If a due date or timeframe is mentioned (e.g., "tomorrow", "next Tuesday", "June 27th at 5pm"), convert it to YYYY-MM-DD format. If no specific date is mentioned, omit this field.

Today's date is: {today}

User request: "{request}"

Respond ONLY with the JSON object. Do not include any other text, greetings, or explanations before or after the JSON.

Example of a valid JSON response if a date was mentioned:
{{
    "title": "Pick up dry cleaning",
    "description": "Two suits and the blue dress, ticket is in the car.",
    "category": "Chores",
    "dueDate": "2024-07-28"
}}

Example if no date or specific category was clear:
{{
    "title": "Call John",
    "description": "Regarding the project update."
}}
"""
