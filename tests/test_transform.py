"""Tests for the data transformer (annotated tables and footnotes)."""


def _content(**kwargs):
    from subsidy_evidence.ingestion.schemas import ExtractedContent

    return ExtractedContent(**kwargs)


def _structured():
    from subsidy_evidence.ingestion.schemas import (
        CompetitorInfo,
        FinancialDataPoint,
        MarketDataPoint,
        StructuredData,
    )

    return StructuredData(
        market_data=[MarketDataPoint(metric="market_size", value=3200.0, unit="億円")],
        competitors=[CompetitorInfo(name="Acme", market_share=12.5)],
        financial_data=[
            FinancialDataPoint(category="売上高", amount=850e6, currency="JPY"),
            FinancialDataPoint(category="revenue", amount=12.5e6, currency="USD"),
            FinancialDataPoint(category="純利益", amount=30e6, currency="JPY"),
        ],
    )


class TestDataTransformer:
    def test_table_order(self):
        from subsidy_evidence.ingestion.schemas import TableData
        from subsidy_evidence.ingestion.transform import DataTransformer

        content = _content(
            structured=_structured(),
            tables=[TableData(headers=["年度", "売上"], rows=[[2023, 100]])],
        )
        tables = DataTransformer().transform(content, 1.0, source_ref="report.pdf")
        assert [t.title for t in tables] == [
            "Market data", "Competitor analysis", "Financial data", "Table 1",
        ]

    def test_market_rows_and_citations(self):
        from subsidy_evidence.ingestion.schemas import DataCategory, FootnoteType
        from subsidy_evidence.ingestion.transform import DataTransformer

        market = DataTransformer().transform(_content(structured=_structured()), 1.0, "report.pdf")[0]
        assert market.headers == ["Metric", "Value", "Unit", "Period", "Source"]
        assert market.rows == [["market_size", 3200, "億円", "", "report.pdf"]]
        assert market.metadata.category is DataCategory.MARKET
        citations = market.footnotes_of(FootnoteType.CITATION)
        assert citations[0].text == "Source: report.pdf"
        assert citations[0].id == "fn1"

    def test_financial_grouped_by_currency(self):
        from subsidy_evidence.ingestion.schemas import FootnoteType
        from subsidy_evidence.ingestion.transform import DataTransformer

        tables = DataTransformer().transform(_content(structured=_structured()), 1.0, "report.pdf")
        financial = next(t for t in tables if t.title == "Financial data")
        assert [row[2] for row in financial.rows] == ["JPY", "JPY", "USD"]
        explanations = [f.text for f in financial.footnotes_of(FootnoteType.EXPLANATION)]
        assert explanations == ["Amounts in JPY (2 item(s))", "Amounts in USD (1 item(s))"]
        citations = [f.text for f in financial.footnotes_of(FootnoteType.CITATION)]
        assert citations == [
            "売上高: source report.pdf", "純利益: source report.pdf", "revenue: source report.pdf",
        ]
        assert [row[4] for row in financial.rows] == ["report.pdf"] * 3

    def test_enhanced_table(self):
        from subsidy_evidence.ingestion.schemas import DataCategory, FootnoteType, TableData
        from subsidy_evidence.ingestion.transform import DataTransformer

        table = TableData(
            headers=["年度", "売上"],
            rows=[[2023, 100]],
            title="",
            footnotes=["単位：百万円"],
            source="book.xlsx",
        )
        result = DataTransformer().transform(_content(tables=[table]), 1.0)[0]
        assert result.title == "Table 1"
        assert result.rows == [[2023, 100]]
        assert result.metadata.category is DataCategory.FINANCIAL
        assert result.metadata.extraction_method == "table_extraction"
        assert [f.text for f in result.footnotes_of(FootnoteType.CITATION)] == [
            "単位：百万円", "Extracted from book.xlsx",
        ]

    def test_free_text_values(self):
        from subsidy_evidence.ingestion.schemas import FootnoteType
        from subsidy_evidence.ingestion.transform import DataTransformer

        tables = DataTransformer().transform(_content(text="Employees: 120人"), 1.0)
        assert len(tables) == 1
        table = tables[0]
        assert table.title == "Values extracted from free text"
        assert table.headers == ["Item", "Value", "Unit", "Context"]
        assert table.rows == [["Employees", 120, "人", "Employees: 120人"]]
        assert table.metadata.extraction_method == "text_pattern"
        assert table.footnotes_of(FootnoteType.EXPLANATION)[0].text == "Context: Employees: 120人"

    def test_context_window_from_settings(self, monkeypatch):
        from subsidy_evidence.ingestion.config import ingest_settings
        from subsidy_evidence.ingestion.transform import DataTransformer

        monkeypatch.setattr(ingest_settings, "context_window", 5)
        table = DataTransformer().transform(_content(text="Total headcount is 120人 across sites"), 1.0)[0]
        assert table.rows[0][3] == "t is 120人 acro"
        assert DataTransformer(context_window=0).context_window == 0

    def test_fullwidth_percent_is_normalised(self):
        from subsidy_evidence.ingestion.transform import DataTransformer

        table = DataTransformer().transform(_content(text="シェア 35％"), 1.0)[0]
        assert table.rows[0][1:3] == [35, "%"]

    def test_no_numbers_no_free_text_table(self):
        from subsidy_evidence.ingestion.transform import DataTransformer

        assert DataTransformer().transform(_content(text="no figures here"), 1.0) == []

    def test_caveat_added_below_threshold(self):
        from subsidy_evidence.ingestion.schemas import FootnoteType, TableData
        from subsidy_evidence.ingestion.transform import DataTransformer

        content = _content(
            structured=_structured(),
            tables=[TableData(headers=["a", "b"], rows=[[1, 2]], source="scan.png")],
            text="Market share 35%",
        )
        tables = DataTransformer().transform(content, 0.5)
        for table in tables:
            caveats = table.footnotes_of(FootnoteType.CAVEAT)
            assert len(caveats) == 1
            assert caveats[0].text.startswith("OCR quality score 50%")
            assert caveats[0].confidence == 0.5
            assert table.footnotes[-1].type is FootnoteType.CAVEAT
            assert table.quality_score == 0.5

    def test_no_caveat_at_or_above_threshold(self):
        from subsidy_evidence.ingestion.schemas import FootnoteType
        from subsidy_evidence.ingestion.transform import DataTransformer

        tables = DataTransformer().transform(_content(structured=_structured()), 0.8)
        assert all(not t.footnotes_of(FootnoteType.CAVEAT) for t in tables)

    def test_quality_is_clamped(self):
        from subsidy_evidence.ingestion.transform import DataTransformer

        tables = DataTransformer().transform(_content(text="120人"), 1.7)
        assert tables[0].quality_score == 1.0

    def test_deterministic(self):
        from subsidy_evidence.ingestion.transform import DataTransformer

        content = _content(structured=_structured(), text="市場規模は3,200億円、シェア12.5%")
        transformer = DataTransformer()
        first = [t.model_dump() for t in transformer.transform(content, 0.6, "a.pdf")]
        second = [t.model_dump() for t in transformer.transform(content, 0.6, "a.pdf")]
        assert first == second


class TestItemName:
    def test_extract_item_name(self):
        from subsidy_evidence.ingestion.transform import extract_item_name

        assert extract_item_name("Total revenue of ") == "revenue"
        assert extract_item_name("the 2023 ") == "Value"
        assert extract_item_name("") == "Value"
