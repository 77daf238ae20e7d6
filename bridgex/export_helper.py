"""
Operations that touch both the blob store and the record store: promoting free
text to attachments, and converting legacy survey answers into health data.
"""

import json
import uuid
from typing import Optional

from bridgex.enhanced_logger import logger
from bridgex.exceptions import BridgeExporterError
from bridgex.schema import UploadSchema
from bridgex.type_mappings import BRIDGE_TYPE_TO_SYNAPSE_TYPE, ColumnType

# Question type -> answer attribute. "None" questions really do keep their answer in scaleAnswer.
SURVEY_TYPE_TO_ANSWER_KEY = {
    'Boolean': 'booleanAnswer',
    'Date': 'dateAnswer',
    'Decimal': 'numericAnswer',
    'Integer': 'numericAnswer',
    'MultipleChoice': 'choiceAnswers',
    'None': 'scaleAnswer',
    'Scale': 'scaleAnswer',
    'SingleChoice': 'choiceAnswers',
    'Text': 'textAnswer',
    'TimeInterval': 'intervalAnswer',
    'TimeOfDay': 'dateComponentsAnswer',
}


def _non_blank_text(node: dict, key: str) -> Optional[str]:
    value = node.get(key)
    if isinstance(value, str) and value.strip():
        return value
    return None


class ExportHelper:

    def __init__(self, s3_helper, dynamo_helper, attachment_bucket: str):
        self.s3_helper = s3_helper
        self.dynamo_helper = dynamo_helper
        self.attachment_bucket = attachment_bucket

    def upload_freeform_text_as_attachment(self, record_id: str, text: str) -> str:
        """Reserve an attachment id for the record and store the text under it. Returns the attachment id."""
        attachment_id = str(uuid.uuid4())
        self.dynamo_helper.reserve_attachment(attachment_id, record_id)
        self.s3_helper.write_bytes(self.attachment_bucket, attachment_id, text.encode('utf-8'))
        return attachment_id

    def convert_survey_record_to_health_data(self, record_id: str, old_data: dict,
                                             survey_schema: UploadSchema) -> dict:
        """
        Fold a legacy survey's answer array into one health data object keyed by item name.

        Answers with no item, no question type or an unknown question type are
        skipped. Answers bound for file handle columns are stored as attachments.

        Raises:
            BridgeExporterError: if the answer link is missing or the answers can't be read
        """
        answer_link = old_data.get('answers') if isinstance(old_data, dict) else None
        if answer_link is None:
            raise BridgeExporterError("No answer link in survey data")

        answer_text = self.s3_helper.read_text(self.attachment_bucket, answer_link)
        try:
            answers = json.loads(answer_text)
        except json.JSONDecodeError as e:
            raise BridgeExporterError(f"Error parsing JSON survey answers from S3 file {answer_link}: {e}") from e
        if answers is None:
            raise BridgeExporterError(f"Survey with no answers from S3 file {answer_link}")

        field_types = survey_schema.field_types
        converted = {}
        for i, answer in enumerate(answers):
            if not isinstance(answer, dict):
                logger.warning(f"Survey record ID {record_id} answer {i} has no value")
                continue

            item = _non_blank_text(answer, 'item')
            if item is None:
                logger.warning(f"Survey record ID {record_id} answer {i} has no question name (item)")
                continue

            question_type = answer.get('questionTypeName')
            if question_type is None:
                question_type = answer.get('questionType')
            if not isinstance(question_type, str) or not question_type.strip():
                logger.warning(f"Survey record ID {record_id} answer {i} has no question type")
                continue

            answer_key = SURVEY_TYPE_TO_ANSWER_KEY.get(question_type)
            if answer_key is None:
                logger.warning(f"Survey record ID {record_id} answer {i} has unknown question type "
                               f"{question_type}")
                continue

            value = answer.get(answer_key)
            if value is not None:
                synapse_type = BRIDGE_TYPE_TO_SYNAPSE_TYPE.get(field_types.get(item))
                if synapse_type == ColumnType.FILEHANDLEID:
                    converted[item] = self.upload_freeform_text_as_attachment(record_id, json.dumps(value))
                else:
                    converted[item] = value

            unit = answer.get('unit')
            if unit is not None:
                converted[f"{item}_unit"] = unit

        return converted
