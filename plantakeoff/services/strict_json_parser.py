"""
Strict JSON Parser - Helper for parsing free-form VLM answers
Handles markdown fences and surrounding prose, and reports failures as tagged results
"""

import json
import re
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Any, Optional, Type, Tuple, Sequence

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)


class ParseFailure(Enum):
    """Why a response produced no value"""
    EMPTY = "empty"  # No text came back at all
    DECLINED = "declined"  # Model answered, but said there is nothing to report
    UNPARSABLE = "unparsable"  # Model answered something we cannot read


@dataclass(frozen=True)
class ParseResult:
    """Tagged parse outcome: ok with a value, or not ok with a reason"""
    ok: bool
    value: Any = None
    reason: Optional[ParseFailure] = None
    method: Optional[str] = None  # 'json', 'fenced_json', 'embedded_json', 'regex'
    detail: str = ""

    @classmethod
    def success(cls, value: Any, method: str) -> "ParseResult":
        return cls(ok=True, value=value, method=method)

    @classmethod
    def failure(cls, reason: ParseFailure, detail: str = "") -> "ParseResult":
        return cls(ok=False, reason=reason, detail=detail)

    @property
    def declined(self) -> bool:
        return self.reason == ParseFailure.DECLINED


# Phrases a model uses when it has nothing to report
DECLINE_PATTERNS = [
    r"\bno (?:matches|match|instances|occurrences|text|building)\b",
    r"\bnot (?:found|present|visible|detected)\b",
    r"\bnone (?:found|visible|detected)\b",
    r"^\s*none\.?\s*$",
    r"\b(?:i )?(?:cannot|can't|unable to) (?:find|identify|locate|see)\b",
]


class StrictJSONParser:
    """Parse JSON out of VLM responses in two steps: structured, then pattern fallback"""

    @staticmethod
    def _strip_fences(content: str) -> Optional[str]:
        match = re.search(r'```(?:json)?\s*(.*?)\s*```', content, re.DOTALL | re.IGNORECASE)
        if match:
            return match.group(1)
        return None

    @staticmethod
    def _balanced_slice(content: str, opener: str, closer: str) -> Optional[str]:
        """Return the first balanced opener..closer span in content"""
        start = content.find(opener)
        if start < 0:
            return None
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(content)):
            char = content[i]
            if in_string:
                if escaped:
                    escaped = False
                elif char == '\\':
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == opener:
                depth += 1
            elif char == closer:
                depth -= 1
                if depth == 0:
                    return content[start:i + 1]
        return None

    @staticmethod
    def extract_json(content: str, expect: type = dict) -> Tuple[Optional[Any], Optional[str]]:
        """
        Extract a JSON value of the expected type from response content

        Args:
            content: Raw response content from the VLM
            expect: dict or list

        Returns:
            (value, method) or (None, None) when nothing parses
        """
        if not content:
            return None, None

        # Try direct JSON parsing first
        try:
            value = json.loads(content)
            if isinstance(value, expect):
                return value, "json"
        except json.JSONDecodeError:
            pass

        # Remove markdown code fences
        fenced = StrictJSONParser._strip_fences(content)
        if fenced:
            try:
                value = json.loads(fenced)
                if isinstance(value, expect):
                    return value, "fenced_json"
            except json.JSONDecodeError as e:
                logger.debug(f"Failed to parse JSON from markdown fence: {e}")

        # Balanced object/array anywhere in the prose
        opener, closer = ('[', ']') if expect is list else ('{', '}')
        embedded = StrictJSONParser._balanced_slice(content, opener, closer)
        if embedded:
            try:
                value = json.loads(embedded)
                if isinstance(value, expect):
                    return value, "embedded_json"
            except json.JSONDecodeError:
                pass

        return None, None

    @staticmethod
    def looks_declined(content: str) -> bool:
        """True when the model explicitly reports that there is nothing to find"""
        lowered = content.strip().lower()
        return any(re.search(pattern, lowered, re.MULTILINE) for pattern in DECLINE_PATTERNS)

    @staticmethod
    def parse_object(content: str) -> ParseResult:
        """Parse a JSON object, tagging empty, declined and unparsable answers"""
        if not content or not content.strip():
            return ParseResult.failure(ParseFailure.EMPTY, "empty response")

        value, method = StrictJSONParser.extract_json(content, dict)
        if value is not None:
            return ParseResult.success(value, method)

        if StrictJSONParser.looks_declined(content):
            return ParseResult.failure(ParseFailure.DECLINED, content.strip()[:200])

        logger.debug(f"Could not extract JSON object (first 200 chars): {content[:200]}")
        return ParseResult.failure(ParseFailure.UNPARSABLE, content.strip()[:200])

    @staticmethod
    def parse_array(
        content: str,
        wrapper_keys: Sequence[str] = ("items", "regions", "text_regions", "matches")
    ) -> ParseResult:
        """
        Parse a JSON array, also accepting an object that wraps the array

        Args:
            content: Raw response content
            wrapper_keys: Keys checked, in order, when the answer is an object

        Returns:
            ParseResult whose value is a list
        """
        if not content or not content.strip():
            return ParseResult.failure(ParseFailure.EMPTY, "empty response")

        value, method = StrictJSONParser.extract_json(content, dict)
        if value is not None:
            for key in wrapper_keys:
                if isinstance(value.get(key), list):
                    return ParseResult.success(value[key], method)

        value, method = StrictJSONParser.extract_json(content, list)
        if value is not None:
            return ParseResult.success(value, method)

        if StrictJSONParser.looks_declined(content):
            return ParseResult.failure(ParseFailure.DECLINED, content.strip()[:200])

        logger.debug(f"Could not extract JSON array (first 200 chars): {content[:200]}")
        return ParseResult.failure(ParseFailure.UNPARSABLE, content.strip()[:200])

    @staticmethod
    def validate_against_schema(
        data: Dict[str, Any],
        schema_class: Type[BaseModel]
    ) -> Tuple[bool, Optional[BaseModel], Optional[str]]:
        """
        Validate JSON data against a Pydantic schema

        Args:
            data: Parsed JSON dictionary
            schema_class: Pydantic model class to validate against

        Returns:
            Tuple of (is_valid, validated_object, error_message)
        """
        if not isinstance(data, dict):
            return False, None, f"Expected an object, got {type(data).__name__}"
        try:
            validated = schema_class(**data)
            return True, validated, None
        except ValidationError as e:
            error_details = []
            for error in e.errors():
                field_path = " -> ".join(str(x) for x in error['loc'])
                error_details.append(f"{field_path}: {error['msg']}")

            error_message = "Schema validation failed:\n" + "\n".join(error_details)
            logger.debug(f"Validation errors: {error_message}")
            return False, None, error_message
