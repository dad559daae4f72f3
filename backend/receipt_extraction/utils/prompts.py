"""Prompt used for receipt extraction.

Keeping the prompt in a central location makes it easier to iterate on
its content. The few-shot examples pin down the JSON shape the parser
expects (``is_valid``, ``vendorName``, ``items[].qty``) and the merge
rule for repeated line items.
"""

from __future__ import annotations

from textwrap import dedent


def get_extraction_prompt() -> str:
    """Return the prompt sent alongside every receipt image.

    Line items may only be merged when both name and unit price match;
    same-name items at different prices stay separate with ``qty`` 1.
    Unreadable images and non-receipts come back as ``is_valid=false``
    with an ``error`` message.
    """
    return dedent(
        """
        Return receipt data as JSON only. IMPORTANT RULES:

        1. Items may be merged ONLY if BOTH the name AND the price are identical.
          - Example: "Milk $2.00" repeated 3 times → one entry with {"name":"Milk","qty":3,"cost":2.00}.
          - In this case, qty = total repeats, cost = unit price.

        2. If items have the SAME NAME but DIFFERENT PRICE → they must remain as SEPARATE entries.
          - Example: "HALLMARK CARD $2.00", "HALLMARK CARD $3.79" → two entries, each with qty=1.
          - In this case, qty must always be 1.

        3. Always list every line item from the receipt, applying rules 1 and 2 strictly.
          - Never merge items by name alone. Price must also match to merge.

        4. If receipt is UNREADABLE or NOT A RECEIPT → return is_valid=false with error message.

        Examples:

        Receipt 1 → {"is_valid":true,"date":"2026-01-14","currency":"USD","vendorName":"Walmart","items":[{"name":"Milk 2%","qty":2,"cost":3.99},{"name":"Bread","qty":1,"cost":2.49},{"name":"Eggs","qty":1,"cost":4.29}],"tax":0.40,"total":32.47}

        Receipt 2 → {"is_valid":true,"date":"2026-01-15","currency":"EUR","vendorName":"Carrefour","items":[{"name":"Baguette","qty":3,"cost":1.50},{"name":"Cheese Camembert","qty":1,"cost":8.99}],"tax":2.15,"total":45.32}

        Receipt 3 (mixed) → {"is_valid":true,"date":"2026-01-16","currency":"USD","vendorName":"Target","items":[{"name":"Cereal","qty":3,"cost":4.99},{"name":"Milk","qty":1,"cost":3.29}],"tax":0.85,"total":22.12}

        Receipt 4 (same name, different prices) → {"is_valid":true,"date":"2026-01-17","currency":"USD","vendorName":"Unknown","items":[{"name":"HALLMARK CARD","qty":1,"cost":2.00},{"name":"HALLMARK CARD","qty":1,"cost":3.79},{"name":"HALLMARK CARD","qty":1,"cost":0.99}],"tax":0.00,"total":6.78}

        Blurry image → {"is_valid":false,"error":"Image unreadable"}

        Extract this receipt:
        """
    ).strip()
