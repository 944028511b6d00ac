"""
Prompt builders for image classification.
"""


def build_classify_prompt(categories) -> str:
    """
    Build the prompt asking a vision model to pick one category for an image.

    Args:
        categories: Allowed category labels.

    Returns:
        Prompt string for the model.
    """
    labels = ", ".join(categories)

    return f"""You are an image classification assistant. Look at the attached image and
choose the ONE category that describes it best.

## Allowed categories
{labels}

## Output

Return ONLY a single valid JSON object, formatted exactly like this:
{{"category": "<one of the allowed categories>", "confidence": <a number between 0 and 1>}}

Use a low confidence when the image does not clearly fit any category.
Do not add any other text.
"""
