from __future__ import annotations

from typing import Tuple

from ..domain.models import FeeContract
from ..llm.providers import ChatMessage

OCR_PROMPT = (
    "You are an OCR engine. Read ALL text in the image. Return only the text, no introduction "
    "or commentary. Keep the table layout: one statement row per line, columns in printed order."
)

_FEE_RULES = {
    FeeContract.GROSS: (
        "- statementDebit / statementCredit are the FULL amounts printed in the row, fees and VAT included.\n"
        "- fee and vat are informational breakdowns of that amount; never subtract or add them yourself."
    ),
    FeeContract.NET: (
        "- statementDebit / statementCredit are the principal amounts WITHOUT fee and VAT.\n"
        "- fee and vat are charged on top and reported separately; never fold them into the principal."
    ),
}


def extraction_system_prompt(contract: FeeContract = FeeContract.GROSS) -> str:
    return f"""
## Task
Convert bank statement text into strict JSON. Copy what is printed; do not compute balances.

## Columns (CRITICAL)
Copy the statement's OWN columns, exactly as the bank prints them:
- statementDebit: amount in the bank's Debit / "Ghi Nợ" / DR / withdrawal / money-out column, positive number or 0.
- statementCredit: amount in the bank's Credit / "Ghi Có" / CR / deposit / money-in column, positive number or 0.
- If the statement has a single signed amount column, put it in amount instead
  (positive = money received, negative = money paid out) and leave statementDebit / statementCredit at 0.
Do NOT convert to accounting debit/credit; that mapping happens after extraction.

## Fee and VAT
{_FEE_RULES[contract]}

## Rows
- Scan top to bottom. Start taking rows once a line has a date or an amount.
- Merge description lines without a date into the previous transaction.
- Skip opening balance, carried forward, subtotal ("Cộng phát sinh") and closing balance rows as transactions;
  report those values in openingBalance / endingBalance instead.
- Anything between "--- HEADER CONTEXT" and "--- END HEADER ---" is reference only. Never extract transactions from it.

## Output (strict)
Return ONLY minified JSON, no code fences, no commentary:
{{
  "openingBalance": number,        // 0 if not printed
  "endingBalance": number,         // 0 if not printed
  "accountInfo": {{"accountName": "", "accountNumber": "", "bankName": "", "branch": ""}},
  "transactions": [
    {{
      "transactionCode": "string",
      "date": "DD/MM/YYYY",
      "description": "string",
      "statementDebit": number,
      "statementCredit": number,
      "amount": number,            // only for single signed-column statements
      "fee": number,
      "vat": number
    }}
  ]
}}
""".strip()


def extraction_messages(text: str, contract: FeeContract = FeeContract.GROSS) -> Tuple[ChatMessage, ...]:
    return (
        ChatMessage(role="system", content=extraction_system_prompt(contract)),
        ChatMessage(role="user", content=f"Statement data to process:\n\n{text}"),
    )


def ocr_messages() -> Tuple[ChatMessage, ...]:
    return (ChatMessage(role="user", content=OCR_PROMPT),)
