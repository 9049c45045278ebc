"""
This mixin applies chart actions: series resynchronization and title updates
on the chart parts related to the main document.
"""

from typing import List, Optional

from .common import FormatError, NotFoundError, PatchItem, Series, ValidationError
from .series import count_series, synchronize_series, update_chart_titles


class ChartPatchMixin:

    def _resolve_chart_part(self, ref) -> str:
        """
        Map a chart reference to a part name.

        Accepts a chart number (1 -> /word/charts/chart1.xml) or a part name.
        """
        partnames = self.package.chart_partnames()
        if isinstance(ref, bool) or ref is None or ref == '':
            raise ValidationError('chart', "chart number or part name is required")
        if isinstance(ref, int) or (isinstance(ref, str) and ref.isdigit()):
            wanted = f'/word/charts/chart{int(ref)}.xml'
        else:
            wanted = ref if str(ref).startswith('/') else f'/{ref}'
        if wanted not in partnames:
            raise NotFoundError(f"document has no chart {wanted} "
                                f"(available: {', '.join(partnames) or 'none'})")
        return wanted

    def _apply_chart(self, item: PatchItem) -> Optional[List[FormatError]]:
        data = item.data
        if not any(key in data for key in ('series', 'title', 'category_axis_title', 'value_axis_title')):
            raise ValidationError('chart', "chart item needs 'series' or a title field")
        partname = self._resolve_chart_part(data.get('chart', 1))
        buffer = self.package.read_part(partname)
        errors: List[FormatError] = []

        if 'series' in data:
            raw_series = data['series']
            if not isinstance(raw_series, list):
                raise ValidationError('series', "must be an array")
            categories = data.get('categories')
            series = []
            for index, entry in enumerate(raw_series):
                if not isinstance(entry, dict):
                    raise ValidationError(f'series[{index}]', "must be an object")
                series.append(Series.from_dict(entry, categories=categories,
                                              field_name=f'series[{index}]'))
            before = count_series(buffer)
            buffer = synchronize_series(buffer, series, errors)
            if self.verbose:
                print(f"  [Chart] {partname}: {before} -> {len(series)} series")

        titles = {
            'chart_title': data.get('title'),
            'category_axis_title': data.get('category_axis_title'),
            'value_axis_title': data.get('value_axis_title'),
        }
        if any(value is not None for value in titles.values()):
            buffer = update_chart_titles(buffer, **titles)
            if self.verbose:
                print(f"  [Chart] {partname}: titles updated")

        self.package.write_part(partname, buffer)
        return errors
