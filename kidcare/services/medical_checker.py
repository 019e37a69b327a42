"""
Medical advice checker.

Two tiers: any strong directive phrase classifies the text as medical advice
on its own; otherwise at least KEYWORD_THRESHOLD distinct medical keywords are
needed.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

logger = logging.getLogger(__name__)

KEYWORD_THRESHOLD = 2

DISCLAIMER = (
    "\n\n[Disclaimer] The content above is for reference only and does not constitute "
    "medical advice. For any health concerns, please consult a doctor or pediatrician."
)

MEDICAL_KEYWORDS = [
    "diagnosis", "diagnose", "treatment", "medication", "medicine", "prescription",
    "dosage", "side effect", "symptom", "disease", "infection", "inflammation",
    "fever", "body temperature", "antibiotic", "anti-inflammatory", "antipyretic",
    "painkiller", "ibuprofen", "acetaminophen", "paracetamol", "over-the-counter",
    "see a doctor", "hospital", "outpatient", "emergency room", "specialist",
    "allergic reaction", "adverse reaction", "contraindication", "pneumonia",
    "bronchitis", "ear infection", "laryngitis", "tonsillitis", "eczema", "hives",
    "diarrhea", "constipation", "vomiting", "abdominal pain", "headache", "earache",
    "sore throat", "cough", "runny nose", "stuffy nose", "sneezing",
    "difficulty breathing", "seizure", "convulsion", "dehydration", "virus",
    "bacteria", "fungal", "parasite", "immune system", "vaccine", "vaccination",
    "immunization", "drug interaction", "drug allergy",
]

STRONG_MEDICAL_INDICATORS = [
    "you must take", "you should take", "you need to take", "it is recommended to take",
    "you can take", "try taking", "consider taking",
    "you must use", "you should use", "you need to use", "consider using",
    "must be treated", "should be treated", "needs to be treated", "requires treatment",
    "you must see a doctor", "you should see a doctor", "seek medical attention",
    "the doctor will", "the doctor may", "doctors usually", "doctors recommend",
    "the doctor may prescribe", "doctor's prescription",
    "this disease", "this condition is usually", "this may be a sign of",
    "this indicates", "this is a typical symptom", "this is a common symptom",
    "this requires medical intervention", "this requires professional treatment",
    "this requires a professional diagnosis", "this requires professional evaluation",
]


@dataclass
class MedicalCheckResult:
    contains_medical_advice: bool
    medical_terms: List[str] = field(default_factory=list)


class MedicalChecker:
    def __init__(
        self,
        keywords: Optional[List[str]] = None,
        strong_indicators: Optional[List[str]] = None,
        threshold: int = KEYWORD_THRESHOLD,
    ):
        self.keywords = MEDICAL_KEYWORDS if keywords is None else keywords
        self.strong_indicators = (
            STRONG_MEDICAL_INDICATORS if strong_indicators is None else strong_indicators
        )
        self.threshold = threshold

    def check(self, text: str) -> MedicalCheckResult:
        haystack = (text or "").lower()

        indicators = [p for p in self.strong_indicators if p.lower() in haystack]
        if indicators:
            logger.debug(f"Strong medical indicators found: {indicators}")
            return MedicalCheckResult(contains_medical_advice=True, medical_terms=indicators)

        terms = [k for k in self.keywords if k.lower() in haystack]
        if terms:
            logger.debug(f"Medical keywords found: {terms}")
        return MedicalCheckResult(
            contains_medical_advice=len(terms) >= self.threshold,
            medical_terms=terms,
        )

    def add_disclaimer(self, text: str) -> str:
        return text + DISCLAIMER
