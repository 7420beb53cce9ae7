from __future__ import annotations

from dealdesk.documents.workflow import FileType

EXTRACTION_SYSTEM_PROMPT = (
    "You are an expert document analysis assistant. Extract form fields accurately and return them in JSON format."
)
KYC_EMAIL_SYSTEM_PROMPT = "You are a professional compliance officer specializing in investment KYC/AML procedures."

_AML_FIELDS = (
    "Full name",
    "Date of birth",
    "Address",
    "Nationality",
    "Occupation",
    "Source of funds",
    "Political exposure status",
    "Risk assessment",
)
_KYC_FIELDS = (
    "Full name",
    "Date of birth",
    "Contact information",
    "Identification details",
    "Financial information",
    "Investment experience",
    "Risk tolerance",
    "Declaration statements",
    "Signature details",
)

# Keeps prompts within the completion model's context window.
MAX_CONTENT_CHARS = 12000


def extraction_prompt(file_type: str, file_name: str, content: bytes) -> str:
    if file_type == FileType.AML.value:
        heading = "Extract all form fields from this AML (Anti-Money Laundering) document."
        fields = _AML_FIELDS
    elif file_type == FileType.KYC.value:
        heading = "Extract all form fields from this KYC (Know Your Customer) document."
        fields = _KYC_FIELDS
    else:
        heading = "Extract all form fields and relevant information from this document."
        fields = ()

    lines = [heading]
    if fields:
        lines.append("Please identify and extract:")
        lines.extend(f"- {field}" for field in fields)
        lines.append("- Any other relevant fields")
    lines.append("")
    lines.append("Return the data in JSON format with field names as keys.")
    lines.append("")
    lines.append(f"Document name: {file_name}")
    lines.append("Document content:")
    lines.append(content.decode("utf-8", errors="replace")[:MAX_CONTENT_CHARS])
    return "\n".join(lines)


def kyc_email_prompt(deal_name: str, contact_name: str, contact_email: str, company_name: str | None, stage: str) -> str:
    return "\n".join(
        [
            "Generate a professional KYC/AML compliance email for an investment deal.",
            "",
            "Deal Details:",
            f"- Deal Name: {deal_name}",
            f"- Contact: {contact_name}",
            f"- Email: {contact_email}",
            f"- Company: {company_name or 'N/A'}",
            f"- Current Stage: {stage.replace('_', ' ')}",
            "",
            "The email should:",
            "1. Be professional and courteous",
            "2. Explain the KYC/AML requirements",
            "3. List the documents needed (ID, proof of address, source of funds, etc.)",
            "4. Provide clear instructions for submission",
            "5. Include a reasonable deadline",
            "6. Mention that this is a standard compliance procedure",
            "7. Include contact information for questions",
            "",
            "Return the email in JSON format with subject and body fields.",
        ]
    )


def kyc_email_fallback(deal_name: str, contact_name: str) -> tuple[str, str]:
    subject = f"KYC/AML Compliance Requirements for {deal_name}"
    body = "\n".join(
        [
            f"Dear {contact_name},",
            "",
            f"Thank you for your interest in {deal_name}. As part of our standard compliance procedure, "
            "we require KYC (Know Your Customer) and AML (Anti-Money Laundering) documentation to proceed.",
            "",
            "Please provide the following documents:",
            "1. Copy of valid ID/passport",
            "2. Proof of address (utility bill or bank statement)",
            "3. Source of funds declaration",
            "4. Company incorporation documents (if applicable)",
            "",
            "Please submit these documents within 7 business days. "
            "If you have any questions, please don't hesitate to contact us.",
            "",
            "Best regards,",
            "Compliance Team",
        ]
    )
    return subject, body
