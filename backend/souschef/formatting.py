"""
Response Formatters
Render recipe lists and recipe instructions as chat text
"""

from souschef.models import RecipeCandidate, RecipeInfo, RecipeStep


def format_recipe_list(candidates: list[RecipeCandidate]) -> str:
    """Numbered list (1-based) of recipe titles followed by a selection prompt"""
    response = "Let's see here...\nI've found these recipes: \n"
    for i, candidate in enumerate(candidates, start=1):
        response += f"{i}.{candidate.title}\n"
    response += "\nPlease enter the corresponding number of your choice."
    return response


def format_recipe_instructions(info: RecipeInfo, steps: list[RecipeStep]) -> str:
    """Intro line, then equipment and action for every step, then the start-over prompt"""
    response = (
        f"Ok, it takes *{info.ready_in_minutes}* minutes to make "
        f"*{info.servings}* servings of *{info.title}*. Here are the steps:\n\n"
    )
    if steps:
        for i, step in enumerate(steps, start=1):
            equipment = ",".join(step.equipment) if step.equipment else "None"
            response += f"*Step {i}*:\n"
            response += f"_Equipment_: {equipment}\n"
            response += f"_Action_: {step.step}\n\n"
    else:
        response += "_No instructions available for this recipe._\n\n"
    response += "*Say anything to me to start over...*"
    return response
