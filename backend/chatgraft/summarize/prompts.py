"""Summary prompt templates, loaded from prompts.yml."""

from pathlib import Path

import yaml
from pydantic import BaseModel

PROMPTS_PATH = Path(__file__).parent / "prompts.yml"


class SummaryPrompts(BaseModel):
    summary: str
    prior_summaries: str
    files_forwarded: str
    files_not_forwarded: str
    rewrite: str
    summary_ack: str

    def build_summary_prompt(
        self,
        prior_count: int,
        include_attachments: bool,
        base: str | None = None,
    ) -> str:
        """Summary request text for one chunk.

        ``base`` replaces the default instruction; the prior-summary warning
        and the file-forwarding note are always appended.
        """
        prompt = base or self.summary
        if prior_count > 0:
            prompt += "\n\n" + self.prior_summaries.format(count=prior_count)
        prompt += "\n\n" + (self.files_forwarded if include_attachments else self.files_not_forwarded)
        return prompt

    def build_rewrite_prompt(self, summary: str, instruction: str) -> str:
        return self.rewrite.format(summary=summary, instruction=instruction)


def load_prompts(path: Path | str | None = None) -> SummaryPrompts:
    with open(path or PROMPTS_PATH) as f:
        data = yaml.safe_load(f)
    return SummaryPrompts.model_validate(data)
