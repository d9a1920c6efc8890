# classes/relationships.py

DEFAULT_RELATIONSHIP = "Relative"

# Label on the owner's record -> label on the relative's record.
RECIPROCAL_RELATIONSHIPS = {
    "parent": "Child",
    "child": "Parent",
    "spouse": "Spouse",
    "husband": "Wife",
    "wife": "Husband",
    "sibling": "Sibling",
    "brother": "Brother",
    "sister": "Sister",
    "grandparent": "Grandchild",
    "grandmother": "Grandson/Granddaughter",
    "grandfather": "Grandson/Granddaughter",
    "grandchild": "Grandparent",
    "grandson": "Grandfather/Grandmother",
    "granddaughter": "Grandfather/Grandmother",
    "aunt": "Niece/Nephew",
    "uncle": "Niece/Nephew",
    "cousin": "Cousin",
    "mother": "Son/Daughter",
    "father": "Son/Daughter",
    "son": "Father/Mother",
    "daughter": "Father/Mother",
}


def reciprocal_relationship(relationship) -> str:
    """
    Inverse of a relationship label, e.g. "Parent" -> "Child".

    Lookup is trimmed and case-insensitive. Any label mentioning a niece or
    nephew maps to "Aunt/Uncle". Unknown, empty or non-string labels fall back
    to "Relative".
    """
    if not relationship or not isinstance(relationship, str):
        return DEFAULT_RELATIONSHIP

    key = relationship.strip().lower()
    if "niece" in key or "nephew" in key:
        return "Aunt/Uncle"

    return RECIPROCAL_RELATIONSHIPS.get(key, DEFAULT_RELATIONSHIP)
