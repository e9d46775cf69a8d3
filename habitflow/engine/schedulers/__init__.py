from .template_selector import TemplateSelection, explain_selection, score_template, select_best_template

__all__ = [
    "TemplateSelection",
    "explain_selection",
    "score_template",
    "select_best_template",
]
