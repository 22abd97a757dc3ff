"""Prompt templates for document extraction, column mapping and categorization.

Prompts are versioned; the version is stored with every extracted record so
results can be traced back to the prompt that produced them.
"""

from __future__ import annotations

import json
from dataclasses import dataclass

# v2.1: Sign-convention instructions moved into the column mapping prompt
PROMPT_VERSION = "v2.1"

# Human-readable descriptions for well-known extraction fields
FIELD_DESCRIPTIONS = {
    "date": "Transaction date (format: YYYY-MM-DD)",
    "totalAmount": "Final total amount (number)",
    "merchantName": "Business/merchant name shown on the document",
    "vendorName": "Name of the company that issued the invoice",
    "subtotal": "Amount before tax (number)",
    "taxAmount": "Total tax amount (number)",
    "tipAmount": "Tip or gratuity (number)",
    "discountAmount": "Total discounts applied (number)",
    "receiptNumber": "Receipt or transaction number",
    "paymentMethod": "One of: cash, card, check, other",
    "invoiceNumber": "Invoice number",
    "poNumber": "Purchase order number",
    "dueDate": "Payment due date (format: YYYY-MM-DD)",
    "amountPaid": "Amount already paid (number)",
    "amountDue": "Amount still due (number)",
    "paymentTerms": "Payment terms, e.g. Net 30",
    "customerName": "Name of the billed customer",
    "direction": "'out' if the user must pay this invoice, 'in' if the user issued it",
    "description": "Short description of what was purchased",
    "category": "Best-guess spending category",
    "currency": "ISO 4217 currency code",
}


@dataclass
class DocumentExtractionPrompt:
    """Prompt template for receipt and invoice extraction from an image.

    Fields are split into three tiers so the model knows what it must find,
    what it should try hard to find, and what is best effort.
    """

    version: str = PROMPT_VERSION

    template: str = """Extract information from this {document_type} image.

CRITICAL: Read the ACTUAL {party} name printed on the {document_type}. Do NOT guess common names unless that exact name appears on the document.

{sections}{tax_instructions}
Return as JSON. Use null if a field is not found. Dates: YYYY-MM-DD format. Amounts: numbers without currency symbols.
If no currency is printed, assume {currency}.

JSON schema:
{schema}"""

    def format(
        self,
        document_type: str,
        required_fields: list[str],
        preferred_fields: list[str],
        optional_fields: list[str],
        json_schema: dict,
        currency: str,
        tax_instructions: str = "",
    ) -> str:
        """Format the extraction prompt.

        Args:
            document_type: "receipt" or "invoice".
            required_fields: Fields that must be present.
            preferred_fields: Fields that are strongly recommended.
            optional_fields: Best-effort fields.
            json_schema: Standard JSON Schema of the expected output.
            currency: Default currency when none is printed.
            tax_instructions: Country-specific tax guidance.

        Returns:
            Formatted prompt.
        """
        sections = (
            self._section("Required fields", required_fields)
            + self._section("Preferred fields", preferred_fields)
            + self._section("Optional fields", optional_fields)
        )
        party = "vendor" if document_type == "invoice" else "merchant/business"
        return self.template.format(
            document_type=document_type,
            party=party,
            sections=sections,
            tax_instructions=f"{tax_instructions}\n" if tax_instructions else "",
            currency=currency,
            schema=json.dumps(json_schema, indent=2),
        )

    @staticmethod
    def _section(title: str, fields: list[str]) -> str:
        if not fields:
            return ""
        lines = []
        for name in fields:
            description = FIELD_DESCRIPTIONS.get(name)
            lines.append(f"- {name}: {description}" if description else f"- {name}")
        return f"{title}:\n" + "\n".join(lines) + "\n\n"


@dataclass
class DocumentTypePrompt:
    """Prompt template for classifying a document image as receipt or invoice."""

    version: str = PROMPT_VERSION

    template: str = """Look at this document image and decide what kind of financial document it is.

- "receipt": proof of a completed purchase (store, restaurant, fuel, online order confirmation)
- "invoice": a bill requesting payment, usually with an invoice number and a due date or payment terms

File name: {file_name}

Return JSON: {{"documentType": "receipt" | "invoice"}}"""

    def format(self, file_name: str) -> str:
        return self.template.format(file_name=file_name)


@dataclass
class ColumnMappingPrompt:
    """Prompt template for mapping spreadsheet columns to transaction fields."""

    version: str = PROMPT_VERSION

    template: str = """You are a financial data extraction expert. Map the spreadsheet columns to standard fields.

{category_context}{sign_instructions}

Preview of the first {row_count} rows:
{preview}

IMPORTANT: Follow the CRITICAL INSTRUCTIONS above to determine sign convention.

Standard fields:
- transactionDate: Primary date column
- postedDate: Posting date (if different from transaction date)
- description: Main transaction text column
- amount: Single signed amount column
- debit: Money-out column (if separate debit/credit columns exist)
- credit: Money-in column (if separate debit/credit columns exist)
- balance: Running balance after transaction
- merchantName: Merchant or payee name
- referenceNumber: Transaction reference, check number, or ID

Rules:
1. PRIORITY: If separate "Debit" and "Credit" columns exist, map BOTH to "debit" and "credit" fields. Do NOT map "amount" in this case.
2. CRITICAL: If debit/credit columns are mapped, include conversion instructions for both: {{"field": "debit", "type": "amount"}} and {{"field": "credit", "type": "amount"}}
3. If only a single "Amount" column exists, map it to "amount" and follow CRITICAL INSTRUCTIONS for "reverseSign".
4. The header row might not be row 0 (some files have title rows above headers).
5. Date formats vary: give the exact format (e.g. "DD/MM/YYYY" vs "MM/DD/YYYY") when ambiguous, set excelSerial: true for Excel serial numbers.
6. Set handleParentheses: true if negative amounts use parentheses notation, e.g. (100.00).
7. merchantName: if no separate merchant column exists, you may map the description column to both "description" and "merchantName".
8. Use null for every field that does not exist in the spreadsheet.
9. Return JSON only."""

    def format(
        self,
        preview: str,
        row_count: int,
        sign_instructions: str,
        categories: list[str] | None = None,
    ) -> str:
        category_context = ""
        if categories:
            category_context = "Known categories: " + ", ".join(categories) + "\n\n"
        return self.template.format(
            category_context=category_context,
            sign_instructions=sign_instructions,
            row_count=row_count,
            preview=preview,
        )


@dataclass
class CategorizationPrompt:
    """Prompt template for AI categorization of a single transaction."""

    version: str = PROMPT_VERSION

    template: str = """You are a financial categorization assistant. Categorize the following transaction into one of the available categories.

Transaction Details:
- Merchant: {merchant}
- Description: {description}
- Amount: {amount}

Available Categories: {categories}

{user_context}Important Context:
- "FINANCIAL", "FINANCE", "LOAN", "CREDIT", "PAYMENT PLAN", "INSTALLMENT" in merchant/description typically indicate loan/debt payments, not software subscriptions
- "BILL PYMT", "PAYMENT", "AUTO PAY" often indicate bill payments or debt servicing

Instructions:
1. Select the BEST matching category from the available list.
2. If none of the categories fit well, suggest a new category name and set isNewCategory to true.
3. Provide a confidence score (0.0 to 1.0).
4. Determine if this is a personal or business expense.
5. If business expense, match to the most appropriate business from the user's list (if available).

Respond in JSON format:
{{
    "categoryName": "string",
    "confidence": 0.85,
    "isNewCategory": false,
    "isBusinessExpense": false,
    "businessId": "string or null",
    "businessName": "string or null"
}}"""

    USAGE_TYPE_CONTEXT = {
        "business": " (Focus on business-related categories like Office Supplies, Professional Services)",
        "personal": " (Focus on personal categories like Groceries, Personal Care, Housing)",
        "both": " (User tracks both personal and business expenses - consider context)",
    }

    def format(
        self,
        merchant_name: str | None,
        description: str | None,
        amount: str | None,
        categories: list[str],
        country: str | None = None,
        usage_type: str | None = None,
        businesses: list[tuple[str, str]] | None = None,
    ) -> str:
        """Format the categorization prompt.

        Args:
            businesses: (id, name) pairs of the user's businesses.
        """
        context_lines = []
        if country:
            context_lines.append(f"User Location: {country}")
        if usage_type:
            context_lines.append(
                f"Usage Type: {usage_type}{self.USAGE_TYPE_CONTEXT.get(usage_type, '')}"
            )
        if businesses:
            business_list = ", ".join(f"{name} (ID: {bid})" for bid, name in businesses)
            context_lines.append(f"User's Businesses: {business_list}")
            context_lines.append(
                "When identifying a business expense, match it to the most appropriate business by ID."
            )
        user_context = "\n".join(context_lines) + "\n\n" if context_lines else ""

        return self.template.format(
            merchant=merchant_name or "Unknown",
            description=description or "N/A",
            amount=amount or "N/A",
            categories=", ".join(categories),
            user_context=user_context,
        )
