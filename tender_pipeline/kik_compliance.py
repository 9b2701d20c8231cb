"""KİK (Kamu İhale Kanunu) compliance analysis.

Computes the abnormally-low-bid (ADT) threshold for catering services,
classifies an offer price against it and produces the justification
document that has to accompany any price below the threshold.

Threshold formula::

    base_value = material.total + labor.total + overhead.total
    threshold  = k_factor * base_value          (k_factor = 0.93)

Maintenance is excluded from the base value by regulation.
"""

from __future__ import annotations

import hashlib
import json
import logging
from decimal import Decimal
from typing import Any

from jsonschema import ValidationError, validate

from tender_pipeline.errors import PipelineError
from tender_pipeline.money import as_float, round_money, round_ratio, to_decimal
from tender_pipeline.schemas import (
    LABOR_META_KEYS,
    MATERIAL_META_KEYS,
    ADTExplanation,
    AdtStatus,
    CostBreakdown,
    CostJustification,
    EvidenceCitation,
    KikAnalysisReport,
    KikThreshold,
    PriceReference,
    SimulationOutput,
)

logger = logging.getLogger(__name__)

K_FACTOR = 0.93
KIK_AUDIT_VERSION = "kik-2025-v1"
ADT_RISK_THRESHOLDS: dict[str, Decimal] = {
    "HIGH": Decimal("0.85"),
    "MEDIUM": Decimal("0.95"),
}
COMPLIANCE_SCORES: dict[str, int] = {"LOW": 95, "MEDIUM": 75, "HIGH": 55}

AUDIT_TRAIL_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["version", "k_factor", "inputs", "formula", "result", "calculated_at"],
    "properties": {
        "version": {"const": KIK_AUDIT_VERSION},
        "k_factor": {"type": "number", "exclusiveMinimum": 0, "maximum": 1},
        "inputs": {
            "type": "object",
            "required": [
                "material_cost",
                "labor_cost",
                "overhead_cost",
                "base_value",
                "recommended_price",
            ],
            "additionalProperties": {"type": "number"},
        },
        "formula": {
            "type": "object",
            "required": ["threshold_calculation", "adt_condition", "risk_assessment"],
            "additionalProperties": {"type": "string"},
        },
        "result": {
            "type": "object",
            "required": ["threshold_value_try", "explanation_required", "risk_level", "price_ratio"],
            "properties": {
                "threshold_value_try": {"type": "number"},
                "explanation_required": {"type": "boolean"},
                "risk_level": {"enum": ["LOW", "MEDIUM", "HIGH"]},
                "price_ratio": {"type": "string"},
            },
        },
        "calculated_at": {"type": "string", "minLength": 1},
    },
}

_MATERIAL_SOURCES = [
    "Hal Müdürlüğü güncel fiyat listeleri",
    "Toptan market zincirlerinden alınan fiyat teklifleri",
    "Tarım ve Orman Bakanlığı piyasa analiz raporları",
]
_LABOR_SOURCES = [
    "Asgari Ücret Tespit Komisyonu kararları",
    "4857 sayılı İş Kanunu çalışma süreleri",
    "SGK prim oranları tablosu",
]
_OVERHEAD_SOURCES = [
    "Yemek Hizmetleri Sektör Analizi (TOBB)",
    "Kamu İhale Kurumu sektörel analiz raporları",
    "İstanbul Sanayi Odası Maliyet Etüt Kılavuzu",
]
_PROFIT_SOURCES = [
    "Benzer ölçekli yemek hizmeti ihalelerinin sonuç ilanları",
    "Sektör ortalama kârlılık raporları",
]
_MAINTENANCE_SOURCES = [
    "Mutfak ekipmanı bakım sözleşmeleri",
    "Üretici periyodik bakım talimatları",
]

_COMPLIANCE_STATEMENT = (
    "Bu teklif, 4734 sayılı Kamu İhale Kanunu ve ilgili yönetmeliklere uyumludur. "
    "Maliyet hesaplamaları objektif kriterlere dayalı olarak yapılmış, tüm kalemler için "
    "gerekçeler sunulmuştur. Teklif edilen fiyat, hizmetin gerektirdiği tüm maliyetleri "
    "karşılayacak düzeydedir."
)

_BASE_MITIGATION = [
    "Gıda güvenliği standartlarına tam uyum sağlanacaktır",
    "Kalite kontrol sistemleri ISO 22000 standardında uygulanacaktır",
    "Tedarik zinciri risk yönetimi planı hazırlanmıştır",
    "Personel eğitim programları düzenli olarak yürütülecektir",
]
_HIGH_RISK_MITIGATION = [
    "Yüksek risk sebebiyle ek kalite güvence önlemleri alınacaktır",
    "Yedek tedarikçi ağı oluşturulmuştur",
    "Acil durum planları hazırlanmıştır",
]


def canonical_json(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=True, sort_keys=True, separators=(",", ":"))


def audit_digest(audit_trail: dict[str, Any]) -> str:
    return hashlib.sha256(canonical_json(audit_trail).encode("utf-8")).hexdigest()


def validate_audit_trail(audit_trail: dict[str, Any]) -> None:
    try:
        validate(instance=audit_trail, schema=AUDIT_TRAIL_SCHEMA)
    except ValidationError as exc:
        raise PipelineError(
            code="KIK_THRESHOLD_INVALID",
            message=f"audit trail does not match {KIK_AUDIT_VERSION}: {exc.message}",
            details={"path": [str(x) for x in exc.absolute_path]},
        ) from exc


def _risk_level_for(ratio: Decimal) -> str:
    if ratio < ADT_RISK_THRESHOLDS["HIGH"]:
        return "HIGH"
    if ratio < ADT_RISK_THRESHOLDS["MEDIUM"]:
        return "MEDIUM"
    return "LOW"


def _price_ratio(price: Decimal, threshold: Decimal) -> Decimal:
    if threshold <= 0:
        raise PipelineError(
            code="KIK_THRESHOLD_INVALID",
            message=f"ADT threshold must be positive, got {threshold}",
            details={"threshold": str(threshold)},
        )
    return price / threshold


class KikComplianceAnalyzer:
    def __init__(self, *, k_factor: float = K_FACTOR) -> None:
        k = to_decimal(k_factor)
        if k <= 0 or k > 1:
            raise PipelineError(
                code="KIK_THRESHOLD_INVALID",
                message=f"k_factor must be in (0, 1], got {k_factor}",
            )
        self._k_factor = k

    @property
    def k_factor(self) -> float:
        return float(self._k_factor)

    def threshold_for(self, *, material_total: Any, labor_total: Any, overhead_total: Any) -> KikThreshold:
        base_value = round_money(
            to_decimal(material_total) + to_decimal(labor_total) + to_decimal(overhead_total)
        )
        threshold = round_money(self._k_factor * base_value)
        return KikThreshold(
            threshold_value_try=as_float(threshold),
            k_factor=float(self._k_factor),
            base_value=as_float(base_value),
        )

    def calculate_threshold(self, output: SimulationOutput) -> KikThreshold:
        return self.threshold_for(
            material_total=output.material_cost.total,
            labor_total=output.labor_cost.total,
            overhead_total=output.overhead_cost.total,
        )

    def check_adt_status(self, price: Any, threshold: Any) -> AdtStatus:
        price_dec = to_decimal(price)
        threshold_dec = to_decimal(threshold)
        ratio = _price_ratio(price_dec, threshold_dec)
        risk_level = _risk_level_for(ratio)
        deviation = (threshold_dec - price_dec) / threshold_dec * 100
        return AdtStatus(
            is_adt=price_dec < threshold_dec,
            explanation_required=price_dec < threshold_dec,
            full_justification_required=risk_level in {"MEDIUM", "HIGH"},
            risk_level=risk_level,
            deviation_percentage=as_float(round_money(deviation)),
            price_ratio=as_float(round_ratio(ratio, 4)),
        )

    def build_audit_trail(
        self,
        *,
        material_total: Any,
        labor_total: Any,
        overhead_total: Any,
        recommended_price: Any,
        calculated_at: str,
    ) -> dict[str, Any]:
        """Return the evidentiary record for one threshold decision.

        The trail only depends on its arguments, so the same inputs always
        serialize (``canonical_json``) to the same bytes.
        """
        threshold = self.threshold_for(
            material_total=material_total,
            labor_total=labor_total,
            overhead_total=overhead_total,
        )
        base = round_money(threshold.base_value)
        threshold_dec = round_money(threshold.threshold_value_try)
        price = round_money(recommended_price)
        ratio = _price_ratio(price, threshold_dec)
        risk_level = _risk_level_for(ratio)
        explanation_required = price < threshold_dec
        ratio_text = str(round_ratio(ratio, 3))

        trail = {
            "version": KIK_AUDIT_VERSION,
            "k_factor": float(self._k_factor),
            "inputs": {
                "material_cost": as_float(round_money(material_total)),
                "labor_cost": as_float(round_money(labor_total)),
                "overhead_cost": as_float(round_money(overhead_total)),
                "base_value": as_float(base),
                "recommended_price": as_float(price),
            },
            "formula": {
                "threshold_calculation": (
                    f"threshold = k_factor * (MM + İM + GG) = {self._k_factor} × {base} = {threshold_dec}"
                ),
                "adt_condition": f"ÖF < threshold → {price} < {threshold_dec} = {str(explanation_required).lower()}",
                "risk_assessment": f"ratio: {ratio_text} → {risk_level}",
            },
            "result": {
                "threshold_value_try": as_float(threshold_dec),
                "explanation_required": explanation_required,
                "risk_level": risk_level,
                "price_ratio": ratio_text,
            },
            "calculated_at": calculated_at,
        }
        validate_audit_trail(trail)
        logger.info(
            "kik_audit_trail version=%s threshold=%s price=%s risk_level=%s digest=%s",
            KIK_AUDIT_VERSION,
            threshold_dec,
            price,
            risk_level,
            audit_digest(trail),
        )
        return trail

    def generate_explanation(self, output: SimulationOutput, *, offer_price: Any = None) -> ADTExplanation:
        threshold = self.calculate_threshold(output)
        price = output.recommended_price if offer_price is None else offer_price
        status = self.check_adt_status(price, threshold.threshold_value_try)
        evidence_date = output.calculated_at[:10]

        justifications: dict[str, CostJustification] = {
            "material": _material_justification(output.material_cost, evidence_date),
            "labor": _labor_justification(output.labor_cost, evidence_date),
            "overhead": _overhead_justification(output.overhead_cost, evidence_date),
            "profit": _profit_justification(output, evidence_date),
        }
        if output.maintenance_cost is not None:
            justifications["maintenance"] = _maintenance_justification(output.maintenance_cost, evidence_date)

        mitigation = list(_BASE_MITIGATION)
        if status.risk_level == "HIGH":
            mitigation.extend(_HIGH_RISK_MITIGATION)

        return ADTExplanation(
            schema_version=KIK_AUDIT_VERSION,
            risk_level=status.risk_level,
            justifications=justifications,
            evidence=_evidence_citations(),
            compliance_statement=_COMPLIANCE_STATEMENT,
            risk_mitigation=mitigation,
        )

    def analyze(self, output: SimulationOutput, *, offer_price: Any = None) -> KikAnalysisReport:
        threshold = self.calculate_threshold(output)
        price = output.recommended_price if offer_price is None else offer_price
        status = self.check_adt_status(price, threshold.threshold_value_try)
        explanation = None
        if status.explanation_required:
            explanation = self.generate_explanation(output, offer_price=price)
            logger.warning(
                "kik_adt_flagged price=%s threshold=%s risk_level=%s deviation_pct=%s",
                price,
                threshold.threshold_value_try,
                status.risk_level,
                status.deviation_percentage,
            )
        return KikAnalysisReport(
            threshold=threshold,
            adt_status=status,
            explanation=explanation,
            compliance_score=COMPLIANCE_SCORES[status.risk_level],
        )


def _amounts(breakdown: CostBreakdown) -> dict[str, float]:
    return {"daily": breakdown.daily, "total": breakdown.total, "per_person": breakdown.per_person}


def _material_justification(material: CostBreakdown, evidence_date: str) -> CostJustification:
    records = [
        PriceReference(
            source="Piyasa fiyat sağlayıcısı (güven skorlu fiyat listesi)",
            date=evidence_date,
            item=category,
            price_per_unit=amount,
            unit="TL/gün",
            verification_method="Porsiyon gramajı ve kg fiyatından yeniden hesaplama",
        )
        for category, amount in sorted(material.details.items())
        if category not in MATERIAL_META_KEYS
    ]
    waste = material.details.get("waste_applied", 0.0)
    return CostJustification(
        category="material",
        calculation_method=(
            "Porsiyon bazlı maliyet: gram/1000 × piyasa_fiyatı(TL/kg) × kişi_sayısı × "
            "öğün_sayısı × (1 + israf/100) × hizmet_günü"
        ),
        source_documentation=list(_MATERIAL_SOURCES),
        rationale=(
            f"Günlük {waste} TL israf payı sektör standardına uygun olarak uygulanmıştır; "
            "porsiyon ölçüleri Sağlık Bakanlığı beslenme rehberine dayanmaktadır."
        ),
        amounts=_amounts(material),
        evidence_records=records,
    )


def _labor_justification(labor: CostBreakdown, evidence_date: str) -> CostJustification:
    records = [
        PriceReference(
            source="İşçilik maliyet tablosu",
            date=evidence_date,
            item=role,
            price_per_unit=amount,
            unit="TL/gün",
            verification_method="Saatlik ücret × çalışma saati × vardiya ve SGK katsayıları",
        )
        for role, amount in sorted(labor.details.items())
        if role not in LABOR_META_KEYS
    ]
    sgk = to_decimal(labor.details.get("sgk_multiplier", 1.4))
    return CostJustification(
        category="labor",
        calculation_method="Rol bazlı: adet × saat/gün × ücret/saat × vardiya_katsayısı × SGK_katsayısı",
        source_documentation=list(_LABOR_SOURCES),
        rationale=(
            f"SGK primleri ve yan haklar %{round_money((sgk - 1) * 100)} oranında hesaplanmıştır; "
            "personel sayısı kişi sayısına göre belirlenmiştir."
        ),
        amounts=_amounts(labor),
        evidence_records=records,
    )


def _overhead_justification(overhead: CostBreakdown, evidence_date: str) -> CostJustification:
    percentage = overhead.details.get("overhead_percentage", 0.0)
    return CostJustification(
        category="overhead",
        calculation_method=f"GG = (MM + İM) × %{percentage}",
        source_documentation=list(_OVERHEAD_SOURCES),
        rationale="Genel gider oranı sektör benchmarkları ve proje risk değerlendirmesine göre belirlenmiştir.",
        amounts=_amounts(overhead),
        evidence_records=[
            PriceReference(
                source="Yemek Hizmetleri Sektör Analizi (TOBB)",
                date=evidence_date,
                item="Genel gider oranı",
                price_per_unit=percentage,
                unit="%",
                verification_method="Sektör benchmark aralığı ile karşılaştırma",
            )
        ],
    )


def _profit_justification(output: SimulationOutput, evidence_date: str) -> CostJustification:
    return CostJustification(
        category="profit",
        calculation_method=f"Kâr = PT × %{output.profit_percentage}",
        source_documentation=list(_PROFIT_SOURCES),
        rationale=(
            f"%{output.profit_percentage} kâr marjı {output.risk_level} risk seviyesi ve "
            "işletme sürdürülebilirliği göz önünde bulundurularak belirlenmiştir."
        ),
        amounts={"margin": output.profit_margin, "project_total": output.project_total},
        evidence_records=[
            PriceReference(
                source="İhale sonuç ilanları",
                date=evidence_date,
                item="Kâr marjı",
                price_per_unit=output.profit_percentage,
                unit="%",
                verification_method="Benzer ihalelerin kâr oranları ile karşılaştırma",
            )
        ],
    )


def _maintenance_justification(maintenance: CostBreakdown, evidence_date: str) -> CostJustification:
    return CostJustification(
        category="maintenance",
        calculation_method="BM = kişi_sayısı × 2 TL/ay × ay_sayısı",
        source_documentation=list(_MAINTENANCE_SOURCES),
        rationale="Bir yılı aşan projelerde ekipman bakımı zorunlu bir maliyet kalemidir.",
        amounts=_amounts(maintenance),
        evidence_records=[
            PriceReference(
                source="Mutfak ekipmanı bakım sözleşmeleri",
                date=evidence_date,
                item="Aylık bakım",
                price_per_unit=maintenance.details.get("monthly_rate", 0.0),
                unit="TL/ay",
                verification_method="Sözleşme birim fiyatı ile karşılaştırma",
            )
        ],
    )


def _evidence_citations() -> list[EvidenceCitation]:
    return [
        EvidenceCitation(
            type="PRICE_LIST",
            title="Hal Müdürlüğü Güncel Fiyat Listesi",
            source="T.C. Tarım ve Orman Bakanlığı",
            page_reference="1-15",
            relevance="Malzeme maliyeti hesaplamalarının dayanağı",
        ),
        EvidenceCitation(
            type="REGULATION",
            title="4734 Sayılı Kamu İhale Kanunu",
            source="Resmi Gazete",
            line_reference="Madde 38",
            relevance="Aşırı düşük teklif değerlendirme kriterleri",
        ),
        EvidenceCitation(
            type="BENCHMARK",
            title="Sektör Maliyet Analizi",
            source="TOBB Yemek Hizmetleri Sektör Raporu",
            page_reference="45-67",
            relevance="Genel gider oranları ve kâr marjı benchmarkı",
        ),
        EvidenceCitation(
            type="CONTRACT",
            title="Toplu İş Sözleşmesi",
            source="Gıda-İş Sendikası",
            relevance="İşçilik maliyeti ve ücret standartları",
        ),
    ]


def check_adt_status(price: Any, threshold: Any) -> AdtStatus:
    return KikComplianceAnalyzer().check_adt_status(price, threshold)


def generate_adt_explanation(output: SimulationOutput) -> ADTExplanation:
    return KikComplianceAnalyzer().generate_explanation(output)
