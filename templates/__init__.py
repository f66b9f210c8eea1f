"""
Static follow-up templates.

Templates are WhatsApp-approved message bodies with {{placeholders}},
resolved per lead state and sequence stage and personalized per lead.
"""
from templates.library import (
    TemplateLibrary, personalize, positional_body, template_variables,
    stage_category, system_default, is_system_template, SYSTEM_DEFAULTS,
)
