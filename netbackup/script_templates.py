"""
Template Processing for Device Scripts
======================================

This module renders the send text of device script steps and evaluates their
``when`` conditions. Templates are Jinja2 strings rendered in a sandbox
against the step context: device variables, credentials, built-in time
variables and the records of the steps that already ran.

Features:
- Sandboxed Jinja2 rendering with strict undefined variables
- Boolean condition evaluation for optional steps
- Built-in variables (timestamp, date, time)
- Template syntax validation when scripts are loaded
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from jinja2 import StrictUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

logger = logging.getLogger(__name__)


class ScriptRenderError(Exception):
	"""Raised when a template or condition cannot be rendered."""


@dataclass
class ProcessedTemplate:
	"""Result of template processing."""
	success: bool
	processed_content: Optional[str] = None
	original_content: str = ""
	error_message: Optional[str] = None
	variables_used: List[str] = field(default_factory=list)


class TemplateProcessor:
	"""Sandboxed Jinja2 engine for send templates and step conditions."""

	def __init__(self):
		self.jinja_env = SandboxedEnvironment(
			autoescape=False,
			undefined=StrictUndefined,
			keep_trailing_newline=True,
		)
		self._expression_cache: Dict[str, Any] = {}

	def _generate_system_variables(self) -> Dict[str, Any]:
		"""Generate built-in system variables."""
		now = datetime.now(timezone.utc)

		return {
			'timestamp': now.strftime('%Y%m%d_%H%M%S'),
			'timestamp_iso': now.isoformat(),
			'date': now.strftime('%Y-%m-%d'),
			'time': now.strftime('%H:%M:%S'),
		}

	def _build_variables(self, variables: Optional[Dict[str, Any]]) -> Dict[str, Any]:
		all_variables = self._generate_system_variables()
		if variables:
			all_variables.update(variables)
		return all_variables

	def render(self, template_content: str, variables: Optional[Dict[str, Any]] = None) -> ProcessedTemplate:
		"""
		Render a send template.

		Text without Jinja2 markup is returned unchanged, so plain commands such
		as ``show running-config`` never touch the template engine.
		"""
		if '{{' not in template_content and '{%' not in template_content:
			return ProcessedTemplate(
				success=True,
				processed_content=template_content,
				original_content=template_content,
			)

		try:
			template = self.jinja_env.from_string(template_content)
			all_variables = self._build_variables(variables)
			processed_content = template.render(all_variables)

			return ProcessedTemplate(
				success=True,
				processed_content=processed_content,
				original_content=template_content,
				variables_used=sorted(all_variables.keys()),
			)

		except TemplateError as e:
			# Never echo variable values here, templates carry credentials
			logger.error(f"Jinja2 template error: {e}")

			return ProcessedTemplate(
				success=False,
				original_content=template_content,
				error_message=f"Template error: {str(e)}",
			)

	def evaluate(self, expression: str, variables: Optional[Dict[str, Any]] = None) -> bool:
		"""Evaluate a ``when`` expression such as ``enable_password is not none``."""
		try:
			compiled = self._expression_cache.get(expression)
			if compiled is None:
				compiled = self.jinja_env.compile_expression(expression, undefined_to_none=False)
				self._expression_cache[expression] = compiled
			return bool(compiled(**self._build_variables(variables)))
		except TemplateError as e:
			raise ScriptRenderError(f"Cannot evaluate condition '{expression}': {e}") from e

	def validate_template_syntax(self, template_content: str) -> Tuple[bool, List[str]]:
		"""Validate template syntax without rendering."""
		errors = []

		if '{{' in template_content or '{%' in template_content:
			try:
				self.jinja_env.from_string(template_content)
			except TemplateError as e:
				errors.append(f"Jinja2 syntax error: {str(e)}")

		return len(errors) == 0, errors

	def validate_expression_syntax(self, expression: str) -> Tuple[bool, List[str]]:
		errors = []
		try:
			self.jinja_env.compile_expression(expression)
		except TemplateError as e:
			errors.append(f"Jinja2 expression error: {str(e)}")
		return len(errors) == 0, errors
